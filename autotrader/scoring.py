"""
Signal Scorer - pontuacao ponderada de todas as features de um instrumento.

Indicadores basicos pesam ate 2, avancados e de volume 3, sentimento 4 e
predicao 3. Filtros de qualidade (liquidez, ADX) rodam antes da decisao.
A funcao score() e pura: mesmas entradas, mesmo Signal.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from .indicators import IndicatorSnapshot, BULLISH, BEARISH
from .models import ParameterSet, Signal, SignalDirection
from .prediction import Prediction
from .sentiment import SentimentReading, NEUTRAL_READING
from .volume import VolumeAnalysis

log = logging.getLogger(__name__)

BULL = 'bull'
BEAR = 'bear'

DEFAULT_SCORING = {
    'min_score': 12,
    'min_margin': 3,
    'min_liquidity_score': 40,
    'hold_confidence': 30,
    'low_liquidity_confidence': 20,
    'weak_trend_confidence': 25,
    'prediction_min_confidence': 60,
    'max_confidence': 95,
}

# (passo acima do threshold, alavancagem)
LEVERAGE_STEPS = ((25, 10), (20, 8), (15, 7), (10, 5), (5, 3), (0, 2))


def leverage_for_confidence(confidence: float, threshold: float) -> int:
    """0 abaixo do threshold; depois 2/3/5/7/8/10 a cada +5 pontos."""
    if confidence < threshold:
        return 0
    for step, leverage in LEVERAGE_STEPS:
        if confidence >= threshold + step:
            return leverage
    return 0


def stop_and_target(entry_price: float, side: str, leverage: int,
                    params: Optional[ParameterSet] = None) -> Tuple[float, float]:
    """
    SL/TP a partir dos percentuais dos parametros, divididos pela alavancagem
    (percentuais sao sobre a margem).
    """
    params = params or ParameterSet()
    lev = max(int(leverage), 1)
    sl_distance = entry_price * params.stop_loss_percent / 100 / lev
    tp_distance = entry_price * params.take_profit_percent / 100 / lev
    if side == 'Buy':
        return entry_price - sl_distance, entry_price + tp_distance
    return entry_price + sl_distance, entry_price - tp_distance


def atr_stop_and_target(entry_price: float, side: str, atr: float,
                        volume: Optional[VolumeAnalysis] = None) -> Dict[str, float]:
    """
    Niveis alternativos por ATR (2x SL, 4x TP), ajustados por suporte/resistencia.
    Informativo: vai para details do sinal.
    """
    if atr <= 0 or entry_price <= 0:
        return {'stop_loss': 0.0, 'take_profit': 0.0, 'risk_reward': 0.0}

    stop_distance = atr * 2
    target_distance = atr * 4
    support = volume.nearest_support if volume else 0.0
    resistance = volume.nearest_resistance if volume else 0.0

    if side == 'Buy':
        if support > 0:
            to_support = entry_price - support
            if atr < to_support < stop_distance:
                stop_distance = to_support
        if resistance > 0:
            to_resistance = resistance - entry_price
            if to_resistance > target_distance * 0.5:
                target_distance = to_resistance
        stop, target = entry_price - stop_distance, entry_price + target_distance
    else:
        if resistance > 0:
            to_resistance = resistance - entry_price
            if atr < to_resistance < stop_distance:
                stop_distance = to_resistance
        if support > 0:
            to_support = entry_price - support
            if to_support > target_distance * 0.5:
                target_distance = to_support
        stop, target = entry_price + stop_distance, entry_price - target_distance

    return {
        'stop_loss': stop,
        'take_profit': target,
        'risk_reward': target_distance / stop_distance,
    }


class SignalScorer:
    """Combina snapshot, volume, sentimento e predicao em um Signal."""

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.settings = dict(DEFAULT_SCORING)
        self.settings.update(settings or {})

    def _collect_factors(self, snap: IndicatorSnapshot, volume: VolumeAnalysis,
                         sentiment: SentimentReading,
                         prediction: Prediction) -> List[Tuple[str, str, float, str]]:
        """Lista de (fator, lado, pontos, motivo)."""
        factors = []

        def add(name, side, points, reason):
            factors.append((name, side, points, reason))

        # Basicos
        if snap.rsi < 30:
            add('rsi', BULL, 2, 'RSI sobrevendido (< 30)')
        elif snap.rsi > 70:
            add('rsi', BEAR, 2, 'RSI sobrecomprado (> 70)')
        elif snap.rsi < 40:
            add('rsi', BULL, 1, 'RSI favoravel para compra')
        elif snap.rsi > 60:
            add('rsi', BEAR, 1, 'RSI favoravel para venda')

        if snap.macd_histogram > 0 and snap.macd > snap.macd_signal:
            add('macd', BULL, 2, 'MACD bullish')
        elif snap.macd_histogram < 0 and snap.macd < snap.macd_signal:
            add('macd', BEAR, 2, 'MACD bearish')

        if snap.price < snap.bb_lower:
            add('bollinger', BULL, 2, 'Preco abaixo da Bollinger inferior')
        elif snap.price > snap.bb_upper:
            add('bollinger', BEAR, 2, 'Preco acima da Bollinger superior')

        # Avancados
        if snap.ichimoku_signal == BULLISH:
            add('ichimoku', BULL, 3, 'Ichimoku bullish')
        elif snap.ichimoku_signal == BEARISH:
            add('ichimoku', BEAR, 3, 'Ichimoku bearish')

        if snap.stoch_rsi_signal == BULLISH:
            add('stoch_rsi', BULL, 3, 'Stochastic RSI bullish')
        elif snap.stoch_rsi_signal == BEARISH:
            add('stoch_rsi', BEAR, 3, 'Stochastic RSI bearish')

        if snap.adx_strength in ('STRONG', 'VERY_STRONG'):
            if snap.plus_di > snap.minus_di:
                add('adx', BULL, 3, 'ADX: tendencia de alta forte')
            else:
                add('adx', BEAR, 3, 'ADX: tendencia de baixa forte')

        if snap.obv_trend == BULLISH:
            add('obv', BULL, 2, 'OBV bullish')
        elif snap.obv_trend == BEARISH:
            add('obv', BEAR, 2, 'OBV bearish')

        if snap.fib_signal == BULLISH:
            add('fibonacci', BULL, 2, 'Fibonacci: zona de compra')
        elif snap.fib_signal == BEARISH:
            add('fibonacci', BEAR, 2, 'Fibonacci: zona de venda')

        # Volume
        if volume.profile_signal == BULLISH:
            add('volume_profile', BULL, 3, 'Volume Profile bullish')
        elif volume.profile_signal == BEARISH:
            add('volume_profile', BEAR, 3, 'Volume Profile bearish')

        if volume.order_flow in ('STRONG_BUY', 'BUY'):
            add('order_flow', BULL, 3, f'Order Flow: pressao de compra ({volume.flow_ratio:.2f}x)')
        elif volume.order_flow in ('STRONG_SELL', 'SELL'):
            add('order_flow', BEAR, 3, f'Order Flow: pressao de venda ({volume.flow_ratio:.2f}x)')

        if volume.sr_signal == 'NEAR_SUPPORT':
            add('support_resistance', BULL, 2, 'Proximo de suporte')
        elif volume.sr_signal == 'NEAR_RESISTANCE':
            add('support_resistance', BEAR, 2, 'Proximo de resistencia')

        # Sentimento so conta com confianca > 0
        if sentiment.confidence > 0:
            label = sentiment.label
            if label == 'very_positive':
                add('sentiment', BULL, 4, 'Sentimento muito positivo')
            elif label == 'positive':
                add('sentiment', BULL, 3, 'Sentimento positivo')
            elif label == 'very_negative':
                add('sentiment', BEAR, 4, 'Sentimento muito negativo')
            elif label == 'negative':
                add('sentiment', BEAR, 3, 'Sentimento negativo')

        min_prediction = self.settings['prediction_min_confidence']
        if prediction.confidence > min_prediction:
            if prediction.direction == 'bullish':
                add('prediction', BULL, 3, 'Predicao de alta')
            elif prediction.direction == 'bearish':
                add('prediction', BEAR, 3, 'Predicao de baixa')

        return factors

    def score(self, instrument: str, snapshot: IndicatorSnapshot,
              sentiment: Optional[SentimentReading] = None,
              volume: Optional[VolumeAnalysis] = None,
              prediction: Optional[Prediction] = None,
              params: Optional[ParameterSet] = None,
              timestamp: str = '') -> Signal:
        """
        Gerar o sinal de um instrumento.

        Args:
            instrument: simbolo (ex: BTCUSDT)
            snapshot: indicadores do ultimo candle
            sentiment: leitura de sentimento (neutra se None)
            volume: analise de volume (liquidez LOW se None)
            prediction: predicao (neutra se None)
            params: ParameterSet usado para a alavancagem
            timestamp: carimbo do sinal (ISO)

        Returns:
            Signal imutavel
        """
        sentiment = sentiment or NEUTRAL_READING
        volume = volume or VolumeAnalysis()
        prediction = prediction or Prediction()
        params = params or ParameterSet()
        cfg = self.settings

        factors = self._collect_factors(snapshot, volume, sentiment, prediction)
        bullish = sum(points for _, side, points, _ in factors if side == BULL)
        bearish = sum(points for _, side, points, _ in factors if side == BEAR)
        reasons = [reason for _, _, _, reason in factors]
        breakdown = tuple((name, side, float(points)) for name, side, points, _ in factors)

        details = {
            'indicators': snapshot.entry_details(),
            'volume': volume.to_dict(),
            'sentiment': sentiment.to_dict(),
            'prediction': prediction.to_dict(),
        }

        def hold(confidence, why, score=0.0):
            return Signal(
                instrument=instrument,
                timestamp=timestamp,
                direction=SignalDirection.HOLD,
                confidence=float(confidence),
                score=float(score),
                bullish_score=float(bullish),
                bearish_score=float(bearish),
                factors=breakdown,
                reasons=tuple(reasons + [why]),
                leverage=0,
                price=snapshot.price,
                details=details,
            )

        # Filtros de qualidade: sem ajuste de sentimento
        if volume.liquidity_score < cfg['min_liquidity_score']:
            return hold(cfg['low_liquidity_confidence'], 'Liquidez muito baixa - mercado sem volume')
        if snapshot.adx_strength == 'WEAK':
            return hold(cfg['weak_trend_confidence'], 'Sem tendencia clara - ADX muito baixo')

        min_score = cfg['min_score']
        margin = cfg['min_margin']
        if bullish >= min_score and bullish > bearish + margin:
            direction, score = SignalDirection.BUY, bullish
        elif bearish >= min_score and bearish > bullish + margin:
            direction, score = SignalDirection.SELL, bearish
        else:
            base = cfg['hold_confidence'] + sentiment.impact
            return hold(round(max(0.0, min(100.0, base))),
                        'Sinais insuficientes ou conflitantes',
                        score=max(bullish, bearish))

        base_confidence = min(cfg['max_confidence'], 40 + score * 2)
        confidence = round(max(0.0, min(100.0, base_confidence + sentiment.impact)))
        leverage = leverage_for_confidence(confidence, params.confidence_threshold)

        side = 'Buy' if direction == SignalDirection.BUY else 'Sell'
        if snapshot.price > 0:
            details['atr_levels'] = atr_stop_and_target(snapshot.price, side, snapshot.atr, volume)
        details['base_confidence'] = base_confidence

        return Signal(
            instrument=instrument,
            timestamp=timestamp,
            direction=direction,
            confidence=float(confidence),
            score=float(score),
            bullish_score=float(bullish),
            bearish_score=float(bearish),
            factors=breakdown,
            reasons=tuple(reasons),
            leverage=leverage,
            price=snapshot.price,
            details=details,
        )
