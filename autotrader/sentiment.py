"""
Sentimento de mercado por instrumento.

Provedores sao plugaveis. Nenhum provedor aqui faz requisicao externa:
PriceActionSentiment deriva um sentimento deterministico do proprio grafico
e StaticSentiment devolve leituras fixas (operador / testes).
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

log = logging.getLogger(__name__)

# (score minimo, rotulo, impacto na confianca)
SENTIMENT_LEVELS = (
    (40, 'very_positive', 15),
    (10, 'positive', 10),
    (-10, 'neutral', 0),
    (-40, 'negative', -10),
)
VERY_NEGATIVE = ('very_negative', -15)


@dataclass(frozen=True)
class SentimentReading:
    """score em [-100, 100], confidence em [0, 100]."""
    score: float = 0.0
    confidence: float = 0.0
    source: str = 'neutral'

    def __post_init__(self):
        object.__setattr__(self, 'score', float(max(-100.0, min(100.0, self.score))))
        object.__setattr__(self, 'confidence', float(max(0.0, min(100.0, self.confidence))))

    @property
    def label(self) -> str:
        return classify_sentiment(self.score)[0]

    @property
    def impact(self) -> float:
        """Ajuste de confianca, ponderado pela confianca da leitura."""
        return classify_sentiment(self.score)[1] * self.confidence / 100.0

    def to_dict(self) -> Dict:
        return {
            'score': round(self.score, 2),
            'confidence': round(self.confidence, 2),
            'label': self.label,
            'impact': round(self.impact, 2),
            'source': self.source,
        }


NEUTRAL_READING = SentimentReading()


def classify_sentiment(score: float) -> Tuple[str, int]:
    for floor, label, impact in SENTIMENT_LEVELS:
        if score >= floor:
            return label, impact
    return VERY_NEGATIVE


class SentimentProvider:
    """Interface: score(instrument, df) -> SentimentReading."""

    name = 'base'

    def score(self, instrument: str, df: Optional[pd.DataFrame] = None) -> SentimentReading:
        raise NotImplementedError


class NeutralSentiment(SentimentProvider):
    name = 'neutral'

    def score(self, instrument: str, df: Optional[pd.DataFrame] = None) -> SentimentReading:
        return NEUTRAL_READING


class StaticSentiment(SentimentProvider):
    """Leituras fixas por instrumento; `default` para os demais."""

    name = 'static'

    def __init__(self, score: float = 0.0, confidence: float = 0.0,
                 per_instrument: Optional[Dict[str, Tuple[float, float]]] = None):
        self.default = SentimentReading(score, confidence, self.name)
        self.per_instrument = {
            symbol: SentimentReading(s, c, self.name)
            for symbol, (s, c) in (per_instrument or {}).items()
        }

    def score(self, instrument: str, df: Optional[pd.DataFrame] = None) -> SentimentReading:
        return self.per_instrument.get(instrument, self.default)


class PriceActionSentiment(SentimentProvider):
    """
    Sentimento derivado do proprio grafico.

    - componente "noticias": retorno da janela (window candles), 1% = 10 pontos
    - componente "social": tendencia do volume na direcao do preco
    Combinados 60% / 40%.
    """

    name = 'price_action'

    def __init__(self, window: int = 24, news_weight: float = 0.6, confidence: float = 50.0):
        self.window = window
        self.news_weight = news_weight
        self.base_confidence = confidence

    def score(self, instrument: str, df: Optional[pd.DataFrame] = None) -> SentimentReading:
        if df is None or len(df) < self.window * 2:
            return NEUTRAL_READING

        close = df['close'].astype(float).to_numpy()
        volume = df['volume'].astype(float).to_numpy()

        start = close[-self.window]
        window_return = (close[-1] - start) / start * 100 if start > 0 else 0.0
        news = float(np.clip(window_return * 10, -100, 100))

        recent = volume[-self.window:].mean()
        previous = volume[-2 * self.window:-self.window].mean()
        volume_change = (recent / previous - 1) * 100 if previous > 0 else 0.0
        direction = np.sign(window_return)
        social = float(np.clip(abs(volume_change) * direction, -100, 100))

        combined = news * self.news_weight + social * (1 - self.news_weight)
        # Noticias e social concordando aumenta a confianca
        agreement = 20.0 if np.sign(news) == np.sign(social) and news != 0 else 0.0
        return SentimentReading(combined, self.base_confidence + agreement, self.name)


def safe_sentiment(provider: Optional[SentimentProvider], instrument: str,
                   df: Optional[pd.DataFrame] = None) -> SentimentReading:
    """Falha do provedor degrada para score 0 / confidence 0."""
    if provider is None:
        return NEUTRAL_READING
    try:
        reading = provider.score(instrument, df)
    except Exception as e:
        log.warning(f"Sentimento indisponivel para {instrument} ({provider.name}): {e}")
        return NEUTRAL_READING
    if not isinstance(reading, SentimentReading):
        log.warning(f"Provedor {provider.name} retornou leitura invalida para {instrument}")
        return NEUTRAL_READING
    return reading
