"""
Preditor heuristico de direcao de preco.

Nao ha modelo treinado: tres votos (tendencia, momentum e retornos
recentes) sobre os fechamentos normalizados da janela.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    direction: str = 'neutral'
    confidence: float = 0.0
    predicted_price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'direction': self.direction,
            'confidence': self.confidence,
            'predicted_price': self.predicted_price,
        }


class Predictor:
    """Interface: predict(df) -> Prediction."""

    name = 'base'

    def predict(self, df: pd.DataFrame) -> Prediction:
        raise NotImplementedError


class HeuristicPredictor(Predictor):
    name = 'heuristic'

    def __init__(self, lookback: int = 60, trend_threshold: float = 0.001):
        self.lookback = lookback
        self.trend_threshold = trend_threshold

    def predict(self, df: pd.DataFrame) -> Prediction:
        if df is None or df.empty:
            return Prediction()

        closes = df['close'].astype(float).to_numpy()
        current = float(closes[-1])
        if len(closes) < self.lookback:
            return Prediction(predicted_price=current)

        recent = closes[-self.lookback:]
        span = recent.max() - recent.min()
        normalized = (recent - recent.min()) / (span if span > 0 else 1.0)
        returns = np.diff(normalized)

        avg_return = float(returns.mean())
        trend = float((normalized[-1] - normalized[0]) / len(normalized))
        momentum = float(returns[-1])

        bullish = bearish = 0
        if trend > self.trend_threshold:
            bullish += 1
        elif trend < -self.trend_threshold:
            bearish += 1

        if momentum > avg_return:
            bullish += 1
        elif momentum < avg_return:
            bearish += 1

        if int((returns[-5:] > 0).sum()) >= 3:
            bullish += 1
        else:
            bearish += 1

        confidence = min(99, max(1, 50 + abs(bullish - bearish) * 15))

        direction = 'neutral'
        if bullish > bearish:
            direction = 'bullish'
        elif bearish > bullish:
            direction = 'bearish'

        predicted = current * (1 + trend + momentum * 0.5)
        return Prediction(direction, float(confidence), round(predicted, 8))


def safe_predict(predictor: Optional[Predictor], df: pd.DataFrame) -> Prediction:
    """Falha do preditor vira predicao neutra com confidence 0."""
    if predictor is None:
        return Prediction()
    try:
        return predictor.predict(df)
    except Exception as e:
        log.warning(f"Predicao indisponivel ({predictor.name}): {e}")
        return Prediction()
