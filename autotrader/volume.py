"""
Analise de volume, order flow, suporte/resistencia e liquidez.

Todas as funcoes sao puras sobre o DataFrame OHLCV e retornam NEUTRAL
quando o historico e curto.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List

import numpy as np
import pandas as pd

from .indicators import NEUTRAL, BULLISH, BEARISH


@dataclass(frozen=True)
class VolumeAnalysis:
    """Resultado consolidado consumido pelo SignalScorer."""
    profile_signal: str = NEUTRAL
    poc: float = 0.0
    vah: float = 0.0
    val: float = 0.0
    order_flow: str = NEUTRAL
    flow_ratio: float = 1.0
    sr_signal: str = NEUTRAL
    nearest_support: float = 0.0
    nearest_resistance: float = 0.0
    supports: List[float] = field(default_factory=list, compare=False, hash=False)
    resistances: List[float] = field(default_factory=list, compare=False, hash=False)
    liquidity: str = 'LOW'
    liquidity_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'profile': {'signal': self.profile_signal, 'poc': self.poc, 'vah': self.vah, 'val': self.val},
            'order_flow': {'pressure': self.order_flow, 'ratio': self.flow_ratio},
            'support_resistance': {
                'signal': self.sr_signal,
                'nearest_support': self.nearest_support,
                'nearest_resistance': self.nearest_resistance,
            },
            'liquidity': {'tier': self.liquidity, 'score': self.liquidity_score},
        }


def analyze_volume_profile(df: pd.DataFrame, bins: int = 20, value_area: float = 0.7) -> Dict[str, Any]:
    """
    Perfil de volume por faixa de preco.

    POC = faixa de maior volume. Value Area = 70% do volume em torno do POC.
    Preco acima do VAH = BULLISH, abaixo do VAL = BEARISH.
    """
    if len(df) < 20:
        return {'poc': 0.0, 'vah': 0.0, 'val': 0.0, 'signal': NEUTRAL}

    min_price = float(min(df['high'].min(), df['low'].min()))
    max_price = float(max(df['high'].max(), df['low'].max()))
    price_range = max_price - min_price
    if price_range <= 0:
        price = float(df['close'].iloc[-1])
        return {'poc': price, 'vah': price, 'val': price, 'signal': NEUTRAL}

    bin_size = price_range / bins
    idx = np.floor((df['close'].to_numpy(dtype=float) - min_price) / bin_size).astype(int)
    idx = np.clip(idx, 0, bins - 1)
    volume_bins = np.bincount(idx, weights=df['volume'].to_numpy(dtype=float), minlength=bins)

    poc_index = int(np.argmax(volume_bins))
    poc = min_price + poc_index * bin_size + bin_size / 2

    target = volume_bins.sum() * value_area
    accumulated = volume_bins[poc_index]
    low_index = high_index = poc_index
    while accumulated < target and (low_index > 0 or high_index < bins - 1):
        low_volume = volume_bins[low_index - 1] if low_index > 0 else 0.0
        high_volume = volume_bins[high_index + 1] if high_index < bins - 1 else 0.0
        if low_volume > high_volume and low_index > 0:
            low_index -= 1
            accumulated += low_volume
        elif high_index < bins - 1:
            high_index += 1
            accumulated += high_volume
        else:
            low_index -= 1
            accumulated += low_volume

    val = min_price + low_index * bin_size
    vah = min_price + (high_index + 1) * bin_size

    price = float(df['close'].iloc[-1])
    signal = NEUTRAL
    if price > vah:
        signal = BULLISH
    elif price < val:
        signal = BEARISH
    elif price > poc:
        signal = 'SLIGHTLY_BULLISH'
    elif price < poc:
        signal = 'SLIGHTLY_BEARISH'

    return {'poc': poc, 'vah': vah, 'val': val, 'signal': signal}


def analyze_order_flow(df: pd.DataFrame) -> Dict[str, Any]:
    """
    Pressao compradora vs vendedora estimada pelo corpo do candle.
    Vela verde: fracao corpo/range do volume vai para compra; vermelha: venda.
    """
    if len(df) < 20:
        return {'buy_volume': 0.0, 'sell_volume': 0.0, 'ratio': 1.0, 'pressure': NEUTRAL}

    change = (df['close'] - df['open']).to_numpy(dtype=float)
    span = (df['high'] - df['low']).to_numpy(dtype=float)
    volume = df['volume'].to_numpy(dtype=float)

    body_ratio = np.where(span > 0, np.abs(change) / np.where(span > 0, span, 1.0), 0.0)
    body_ratio = np.clip(body_ratio, 0.0, 1.0)

    # Doji (ou range zero) divide o volume ao meio
    up_share = np.where(change > 0, body_ratio, np.where(change < 0, 1 - body_ratio, 0.5))
    up_share = np.where((change != 0) & (span <= 0), np.where(change > 0, 1.0, 0.0), up_share)

    buy_volume = float((volume * up_share).sum())
    sell_volume = float((volume * (1 - up_share)).sum())
    ratio = 10.0 if sell_volume == 0 else buy_volume / sell_volume

    pressure = NEUTRAL
    if ratio > 1.5:
        pressure = 'STRONG_BUY'
    elif ratio > 1.2:
        pressure = 'BUY'
    elif ratio < 0.67:
        pressure = 'STRONG_SELL'
    elif ratio < 0.83:
        pressure = 'SELL'

    return {'buy_volume': buy_volume, 'sell_volume': sell_volume, 'ratio': ratio, 'pressure': pressure}


def identify_support_resistance(df: pd.DataFrame, tolerance: float = 0.02, window: int = 5,
                                proximity: float = 0.01) -> Dict[str, Any]:
    """
    Pivots locais (+-5 candles) agrupados em zonas (tolerancia 2%).
    NEAR_SUPPORT / NEAR_RESISTANCE quando o preco esta a menos de 1%.
    """
    if len(df) < 50:
        return {'supports': [], 'resistances': [], 'nearest_support': 0.0,
                'nearest_resistance': 0.0, 'signal': NEUTRAL}

    prices = df['close'].to_numpy(dtype=float)
    price = float(prices[-1])

    supports: List[float] = []
    resistances: List[float] = []

    def add_pivot(levels: List[float], level: float):
        for i, existing in enumerate(levels):
            if abs(existing - level) / level < tolerance:
                levels[i] = (existing + level) / 2
                return
        levels.append(level)

    for i in range(window, len(prices) - window):
        segment = prices[i - window:i + window + 1]
        if prices[i] == segment.max():
            add_pivot(resistances, float(prices[i]))
        elif prices[i] == segment.min():
            add_pivot(supports, float(prices[i]))

    supports.sort(reverse=True)
    resistances.sort()

    nearest_support = next((s for s in supports if s < price), 0.0)
    nearest_resistance = next((r for r in resistances if r > price), 0.0)

    dist_support = (price - nearest_support) / price if nearest_support else 1.0
    dist_resistance = (nearest_resistance - price) / price if nearest_resistance else 1.0

    signal = NEUTRAL
    if dist_support < proximity:
        signal = 'NEAR_SUPPORT'
    elif dist_resistance < proximity:
        signal = 'NEAR_RESISTANCE'

    return {
        'supports': supports[:3],
        'resistances': resistances[:3],
        'nearest_support': nearest_support,
        'nearest_resistance': nearest_resistance,
        'signal': signal,
    }


LIQUIDITY_TIERS = (
    (2.0, 'VERY_HIGH', 100),
    (1.5, 'HIGH', 80),
    (1.0, 'NORMAL', 60),
    (0.5, 'LOW', 40),
)


def analyze_liquidity(df: pd.DataFrame) -> Dict[str, Any]:
    """Volume atual vs medio da janela, em faixas."""
    if len(df) < 20:
        return {'avg_volume': 0.0, 'current_volume': 0.0, 'liquidity': 'LOW', 'score': 0}

    volumes = df['volume'].astype(float)
    avg_volume = float(volumes.mean())
    current_volume = float(volumes.iloc[-1])
    ratio = current_volume / avg_volume if avg_volume > 0 else 0.0

    liquidity, score = 'VERY_LOW', 20
    for floor, tier, tier_score in LIQUIDITY_TIERS:
        if ratio > floor:
            liquidity, score = tier, tier_score
            break

    return {'avg_volume': avg_volume, 'current_volume': current_volume,
            'liquidity': liquidity, 'score': score}


def analyze_volume(df: pd.DataFrame) -> VolumeAnalysis:
    """Analise completa de volume."""
    if df is None or df.empty:
        return VolumeAnalysis()

    profile = analyze_volume_profile(df)
    flow = analyze_order_flow(df)
    sr = identify_support_resistance(df)
    liquidity = analyze_liquidity(df)

    return VolumeAnalysis(
        profile_signal=profile['signal'],
        poc=profile['poc'],
        vah=profile['vah'],
        val=profile['val'],
        order_flow=flow['pressure'],
        flow_ratio=flow['ratio'],
        sr_signal=sr['signal'],
        nearest_support=sr['nearest_support'],
        nearest_resistance=sr['nearest_resistance'],
        supports=sr['supports'],
        resistances=sr['resistances'],
        liquidity=liquidity['liquidity'],
        liquidity_score=liquidity['score'],
    )
