"""
Indicator Engine - Indicadores tecnicos puros (pandas/numpy)
================================================================================
Funcoes deterministicas e sem estado sobre um DataFrame OHLCV ordenado.

CONTRATO: quando o historico e menor que o minimo de um indicador, ele
retorna o valor NEUTRO documentado (oscilador = 50, tendencia = NEUTRAL)
em vez de falhar. "Dados insuficientes" e um estado valido de baixa
confianca, nao um erro.

| indicador        | minimo            | neutro            |
|------------------|-------------------|-------------------|
| RSI              | period + 1        | 50                |
| MACD             | 26                | 0 / 0 / 0         |
| Bollinger        | period            | preco / preco     |
| SMA              | period            | ultimo preco      |
| ATR              | period + 1        | 0                 |
| Stochastic       | k + smooth + d    | 50 / 50           |
| Ichimoku         | 52                | NEUTRAL           |
| Stochastic RSI   | period + 16       | 50 / 50 NEUTRAL   |
| ADX              | period + 1        | 0, WEAK           |
| OBV              | 2                 | NEUTRAL           |
| Fibonacci        | lookback (100)    | NEUTRAL           |
================================================================================
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

import numpy as np
import pandas as pd

NEUTRAL = 'NEUTRAL'
BULLISH = 'BULLISH'
BEARISH = 'BEARISH'

# Faixa minima (max - min) para considerar uma janela de RSI como nao-constante
_FLAT_EPSILON = 1e-6


# =============================================================================
# SERIES (matematica compartilhada, Wilder smoothing como TradingView)
# =============================================================================

def rsi_series(close: pd.Series, period: int = 14) -> pd.Series:
    """
    RSI usando Wilder's Smoothed Moving Average (ewm alpha = 1/period).
    """
    delta = close.diff()
    gain = delta.where(delta > 0, 0.0)
    loss = -delta.where(delta < 0, 0.0)

    alpha = 1 / period
    avg_gain = gain.ewm(alpha=alpha, adjust=False).mean()
    avg_loss = loss.ewm(alpha=alpha, adjust=False).mean()

    rs = avg_gain / (avg_loss + 1e-10)
    return 100 - (100 / (1 + rs))


def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
    tr1 = high - low
    tr2 = (high - close.shift()).abs()
    tr3 = (low - close.shift()).abs()
    return pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)


def atr_series(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
    """ATR com Wilder's smoothing."""
    return true_range(high, low, close).ewm(alpha=1 / period, adjust=False).mean()


def dmi_series(high: pd.Series, low: pd.Series, close: pd.Series,
               period: int = 14) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """
    ADX, +DI e -DI com Wilder's smoothing.

    Returns:
        adx, plus_di, minus_di
    """
    up = high.diff()
    down = -low.diff()

    plus_dm = up.where((up > down) & (up > 0), 0.0)
    minus_dm = down.where((down > up) & (down > 0), 0.0)

    atr = atr_series(high, low, close, period)
    alpha = 1 / period

    plus_di = 100 * plus_dm.ewm(alpha=alpha, adjust=False).mean() / (atr + 1e-10)
    minus_di = 100 * minus_dm.ewm(alpha=alpha, adjust=False).mean() / (atr + 1e-10)

    dx = 100 * (plus_di - minus_di).abs() / (plus_di + minus_di + 1e-10)
    adx = dx.ewm(alpha=alpha, adjust=False).mean()
    return adx, plus_di, minus_di


def _last(series: pd.Series, default: float) -> float:
    """Ultimo valor finito da serie, ou default."""
    if series is None or len(series) == 0:
        return default
    value = series.iloc[-1]
    if value is None or not np.isfinite(value):
        return default
    return float(value)


# =============================================================================
# INDICADORES BASICOS
# =============================================================================

def calculate_rsi(close: pd.Series, period: int = 14) -> float:
    if len(close) < period + 1:
        return 50.0
    return _last(rsi_series(close, period), 50.0)


def calculate_macd(close: pd.Series, fast: int = 12, slow: int = 26,
                   signal: int = 9) -> Tuple[float, float, float]:
    """
    MACD (linha, sinal, histograma) do ultimo candle.
    Menos de `slow` candles -> (0, 0, 0).
    """
    if len(close) < slow:
        return 0.0, 0.0, 0.0
    ema_fast = close.ewm(span=fast, adjust=False).mean()
    ema_slow = close.ewm(span=slow, adjust=False).mean()
    macd_line = ema_fast - ema_slow
    signal_line = macd_line.ewm(span=signal, adjust=False).mean()
    histogram = macd_line - signal_line
    return _last(macd_line, 0.0), _last(signal_line, 0.0), _last(histogram, 0.0)


def calculate_bollinger(close: pd.Series, period: int = 20,
                        std_mult: float = 2.0) -> Tuple[float, float, float]:
    """
    Bollinger Bands (upper, middle, lower) com ddof=0 (TradingView).
    Historico curto -> as tres bandas no preco atual.
    """
    price = _last(close, 0.0)
    if len(close) < period:
        return price, price, price
    window = close.iloc[-period:]
    mid = float(window.mean())
    std_dev = float(window.std(ddof=0))
    return mid + std_dev * std_mult, mid, mid - std_dev * std_mult


def calculate_sma(close: pd.Series, period: int) -> float:
    if len(close) < period:
        return _last(close, 0.0)
    return float(close.iloc[-period:].mean())


def calculate_atr(df: pd.DataFrame, period: int = 14) -> float:
    if len(df) < period + 1:
        return 0.0
    return _last(atr_series(df['high'], df['low'], df['close'], period), 0.0)


def calculate_stochastic(df: pd.DataFrame, k_period: int = 14, d_period: int = 3,
                         smooth_k: int = 3) -> Tuple[float, float]:
    """
    Stochastic Oscillator (%K suavizado, %D).
    raw_k -> SMA(smooth_k) -> K -> SMA(d) -> D
    """
    if len(df) < k_period + smooth_k + d_period - 2:
        return 50.0, 50.0
    lowest_low = df['low'].rolling(k_period).min()
    highest_high = df['high'].rolling(k_period).max()
    raw_k = 100 * (df['close'] - lowest_low) / (highest_high - lowest_low + 1e-10)
    k = raw_k.rolling(smooth_k).mean()
    d = k.rolling(d_period).mean()
    return _last(k, 50.0), _last(d, 50.0)


def calculate_volatility(close: pd.Series, period: int = 20) -> float:
    """Desvio padrao dos retornos (%) na janela recente."""
    if len(close) < 3:
        return 0.0
    returns = close.pct_change().dropna().iloc[-period:]
    if len(returns) < 2:
        return 0.0
    value = float(returns.std(ddof=0) * 100)
    return value if math.isfinite(value) else 0.0


def calculate_volume_ratio(volume: pd.Series, period: int = 20) -> float:
    """Volume atual / media movel do volume (>1 = acima da media)."""
    if len(volume) < period:
        return 1.0
    avg = float(volume.iloc[-period:].mean())
    if avg <= 0:
        return 1.0
    return float(volume.iloc[-1]) / avg


def classify_trend(rsi: float, sma20: float, sma50: float, price: float) -> str:
    """Votacao simples: 'bullish', 'bearish' ou 'neutral'."""
    bullish = 0
    bearish = 0

    if rsi < 30:
        bullish += 1
    if rsi > 70:
        bearish += 1

    if sma20 > sma50:
        bullish += 1
    if sma20 < sma50:
        bearish += 1

    if price > sma20:
        bullish += 1
    if price < sma20:
        bearish += 1

    if bullish > bearish:
        return 'bullish'
    if bearish > bullish:
        return 'bearish'
    return 'neutral'


# =============================================================================
# INDICADORES AVANCADOS
# =============================================================================

def calculate_ichimoku(df: pd.DataFrame) -> Dict[str, Any]:
    """
    Ichimoku (tenkan 9, kijun 26, senkou B 52).
    BULLISH: preco acima da nuvem e tenkan > kijun. BEARISH: espelho.
    """
    if len(df) < 52:
        return {'tenkan': 0.0, 'kijun': 0.0, 'senkou_a': 0.0, 'senkou_b': 0.0, 'signal': NEUTRAL}

    def midpoint(n: int) -> float:
        recent = df.iloc[-n:]
        return (float(recent['high'].max()) + float(recent['low'].min())) / 2

    tenkan = midpoint(9)
    kijun = midpoint(26)
    senkou_a = (tenkan + kijun) / 2
    senkou_b = midpoint(52)
    price = float(df['close'].iloc[-1])

    signal = NEUTRAL
    if price > max(senkou_a, senkou_b) and tenkan > kijun:
        signal = BULLISH
    elif price < min(senkou_a, senkou_b) and tenkan < kijun:
        signal = BEARISH

    return {'tenkan': tenkan, 'kijun': kijun, 'senkou_a': senkou_a, 'senkou_b': senkou_b, 'signal': signal}


def _stoch_of(values: np.ndarray) -> float:
    high = float(values.max())
    low = float(values.min())
    if high - low < _FLAT_EPSILON:
        return 50.0
    return (float(values[-1]) - low) / (high - low) * 100


def calculate_stoch_rsi(close: pd.Series, period: int = 14, stoch_period: int = 14,
                        d_period: int = 3) -> Dict[str, Any]:
    """
    Stochastic RSI. BULLISH: k < 20 e k > d (sobrevendido virando);
    BEARISH: k > 80 e k < d.
    """
    neutral = {'k': 50.0, 'd': 50.0, 'signal': NEUTRAL}
    if len(close) < period + 1:
        return neutral

    rsi_values = rsi_series(close, period).iloc[period:].to_numpy(dtype=float)
    if len(rsi_values) < stoch_period + d_period - 1:
        return neutral

    k_values = [
        _stoch_of(rsi_values[end - stoch_period:end])
        for end in range(len(rsi_values) - d_period + 1, len(rsi_values) + 1)
    ]
    k = k_values[-1]
    d = float(np.mean(k_values))

    signal = NEUTRAL
    if k < 20 and k > d:
        signal = BULLISH
    elif k > 80 and k < d:
        signal = BEARISH

    return {'k': k, 'd': d, 'signal': signal}


def classify_adx(adx: float) -> str:
    if adx > 50:
        return 'VERY_STRONG'
    if adx > 25:
        return 'STRONG'
    if adx > 20:
        return 'MODERATE'
    return 'WEAK'


def calculate_adx(df: pd.DataFrame, period: int = 14) -> Dict[str, Any]:
    """ADX com direcao (+DI/-DI) e classificacao de forca."""
    if len(df) < period + 1:
        return {'adx': 0.0, 'plus_di': 0.0, 'minus_di': 0.0, 'strength': 'WEAK'}
    adx, plus_di, minus_di = dmi_series(df['high'], df['low'], df['close'], period)
    adx_value = _last(adx, 0.0)
    return {
        'adx': adx_value,
        'plus_di': _last(plus_di, 0.0),
        'minus_di': _last(minus_di, 0.0),
        'strength': classify_adx(adx_value),
    }


def calculate_obv(df: pd.DataFrame, period: int = 20) -> Dict[str, Any]:
    """On-Balance Volume comparado com sua media recente (x1.1 / x0.9)."""
    if len(df) < 2:
        return {'obv': 0.0, 'trend': NEUTRAL}

    direction = np.sign(df['close'].diff().fillna(0.0))
    obv = (direction * df['volume']).cumsum()
    current = float(obv.iloc[-1])
    mean = float(obv.iloc[-period:].mean())

    trend = NEUTRAL
    if current > mean * 1.1:
        trend = BULLISH
    elif current < mean * 0.9:
        trend = BEARISH

    return {'obv': current, 'trend': trend}


FIB_RATIOS = {'23.6%': 0.236, '38.2%': 0.382, '50%': 0.5, '61.8%': 0.618, '78.6%': 0.786}


def calculate_fibonacci(df: pd.DataFrame, lookback: int = 100, proximity: float = 0.01) -> Dict[str, Any]:
    """
    Retracao de Fibonacci no lookback.
    Perto (1%) de 61.8/78.6 = zona de compra; de 23.6/38.2 = zona de venda.
    """
    if len(df) < lookback:
        return {'high': 0.0, 'low': 0.0, 'levels': {}, 'signal': NEUTRAL}

    recent = df.iloc[-lookback:]
    high = float(recent['high'].max())
    low = float(recent['low'].min())
    diff = high - low
    levels = {'0%': high, '100%': low}
    for name, ratio in FIB_RATIOS.items():
        levels[name] = high - diff * ratio

    price = float(df['close'].iloc[-1])

    def near(level: str) -> bool:
        return price > 0 and abs(price - levels[level]) / price < proximity

    signal = NEUTRAL
    if near('61.8%') or near('78.6%'):
        signal = BULLISH
    elif near('23.6%') or near('38.2%'):
        signal = BEARISH

    return {'high': high, 'low': low, 'levels': levels, 'signal': signal}


# =============================================================================
# SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class IndicatorSnapshot:
    """Features de um instrumento no ciclo atual. Intermediario, nunca persistido."""
    price: float
    rsi: float = 50.0
    macd: float = 0.0
    macd_signal: float = 0.0
    macd_histogram: float = 0.0
    bb_upper: float = 0.0
    bb_middle: float = 0.0
    bb_lower: float = 0.0
    sma20: float = 0.0
    sma50: float = 0.0
    atr: float = 0.0
    volatility: float = 0.0
    stoch_k: float = 50.0
    stoch_d: float = 50.0
    volume_ratio: float = 1.0
    trend: str = 'neutral'
    ichimoku_signal: str = NEUTRAL
    stoch_rsi_k: float = 50.0
    stoch_rsi_d: float = 50.0
    stoch_rsi_signal: str = NEUTRAL
    adx: float = 0.0
    plus_di: float = 0.0
    minus_di: float = 0.0
    adx_strength: str = 'WEAK'
    obv_trend: str = NEUTRAL
    fib_signal: str = NEUTRAL
    fib_levels: Dict[str, float] = field(default_factory=dict, compare=False, hash=False)
    candle_count: int = 0

    @property
    def sufficient_data(self) -> bool:
        """True quando todos os indicadores tiveram historico suficiente."""
        return self.candle_count >= 100

    def entry_details(self) -> Dict[str, Any]:
        """Indicadores de entrada gravados junto ao trade."""
        return {
            'rsi': round(self.rsi, 4),
            'macd': round(self.macd, 8),
            'macd_signal': round(self.macd_signal, 8),
            'macd_histogram': round(self.macd_histogram, 8),
            'bb_upper': self.bb_upper,
            'bb_middle': self.bb_middle,
            'bb_lower': self.bb_lower,
            'volume_ratio': round(self.volume_ratio, 4),
            'trend': self.trend,
            'volatility': round(self.volatility, 4),
            'adx': round(self.adx, 4),
            'atr': self.atr,
        }


def build_snapshot(df: pd.DataFrame, params: Dict[str, Any] = None) -> IndicatorSnapshot:
    """
    Calcular todos os indicadores do ultimo candle.
    DataFrame vazio -> snapshot neutro com price 0.
    """
    params = params or {}
    if df is None or df.empty:
        return IndicatorSnapshot(price=0.0)

    close = df['close'].astype(float)
    price = float(close.iloc[-1])

    rsi_period = params.get('rsi_period', 14)
    bb_upper, bb_middle, bb_lower = calculate_bollinger(
        close, params.get('bb_period', 20), params.get('bb_std', 2.0)
    )
    macd, macd_signal, macd_hist = calculate_macd(close)
    rsi = calculate_rsi(close, rsi_period)
    sma20 = calculate_sma(close, 20)
    sma50 = calculate_sma(close, 50)
    stoch_k, stoch_d = calculate_stochastic(df, params.get('stoch_period', 14))
    ichimoku = calculate_ichimoku(df)
    stoch_rsi = calculate_stoch_rsi(close, rsi_period)
    adx = calculate_adx(df, params.get('adx_period', 14))
    obv = calculate_obv(df)
    fib = calculate_fibonacci(df, params.get('fib_lookback', 100))

    return IndicatorSnapshot(
        price=price,
        rsi=rsi,
        macd=macd,
        macd_signal=macd_signal,
        macd_histogram=macd_hist,
        bb_upper=bb_upper,
        bb_middle=bb_middle,
        bb_lower=bb_lower,
        sma20=sma20,
        sma50=sma50,
        atr=calculate_atr(df, params.get('atr_period', 14)),
        volatility=calculate_volatility(close),
        stoch_k=stoch_k,
        stoch_d=stoch_d,
        volume_ratio=calculate_volume_ratio(df['volume'].astype(float)),
        trend=classify_trend(rsi, sma20, sma50, price),
        ichimoku_signal=ichimoku['signal'],
        stoch_rsi_k=stoch_rsi['k'],
        stoch_rsi_d=stoch_rsi['d'],
        stoch_rsi_signal=stoch_rsi['signal'],
        adx=adx['adx'],
        plus_di=adx['plus_di'],
        minus_di=adx['minus_di'],
        adx_strength=adx['strength'],
        obv_trend=obv['trend'],
        fib_signal=fib['signal'],
        fib_levels=fib['levels'],
        candle_count=len(df),
    )
