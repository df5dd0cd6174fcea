"""
Testes do Signal Scorer.
"""
from autotrader.indicators import IndicatorSnapshot, build_snapshot
from autotrader.models import ParameterSet, SignalDirection
from autotrader.prediction import HeuristicPredictor
from autotrader.scoring import (
    SignalScorer, atr_stop_and_target, leverage_for_confidence, stop_and_target,
)
from autotrader.sentiment import SentimentReading, StaticSentiment
from autotrader.volume import VolumeAnalysis, analyze_volume

from conftest import falling_frame, flat_frame, rising_frame

POSITIVE = SentimentReading(score=60, confidence=80, source='static')
NEGATIVE = SentimentReading(score=-60, confidence=80, source='static')
LIQUID = VolumeAnalysis(liquidity='HIGH', liquidity_score=80)


def score_frame(df, sentiment=None, prediction=None, params=None):
    scorer = SignalScorer()
    return scorer.score('BTCUSDT', build_snapshot(df), sentiment, analyze_volume(df),
                        prediction, params or ParameterSet(), timestamp='2024-01-01T00:00:00+00:00')


def test_rising_market_with_volume_and_positive_sentiment_buys():
    signal = score_frame(rising_frame(), sentiment=StaticSentiment(60, 80).score('BTCUSDT'))

    assert signal.direction == SignalDirection.BUY
    assert signal.confidence >= 70
    assert signal.bullish_score >= 12
    assert signal.bullish_score > signal.bearish_score + 3
    assert signal.leverage > 0
    assert signal.actionable
    assert signal.details['atr_levels']['stop_loss'] < signal.price


def test_prediction_adds_bullish_points():
    df = rising_frame()
    without = score_frame(df, sentiment=POSITIVE)
    with_prediction = score_frame(df, sentiment=POSITIVE, prediction=HeuristicPredictor().predict(df))
    assert with_prediction.bullish_score == without.bullish_score + 3
    assert ('prediction', 'bull', 3.0) in with_prediction.factors


def test_flat_dry_market_holds_on_liquidity_gate():
    signal = score_frame(flat_frame(), sentiment=POSITIVE)

    assert signal.direction == SignalDirection.HOLD
    assert signal.confidence == 20
    assert signal.score == 0
    assert signal.leverage == 0
    assert any('Liquidez' in r for r in signal.reasons)


def test_weak_adx_holds():
    snap = IndicatorSnapshot(price=100.0, rsi=25.0, adx_strength='WEAK')
    signal = SignalScorer().score('BTCUSDT', snap, POSITIVE, LIQUID)
    assert signal.direction == SignalDirection.HOLD
    assert signal.confidence == 25
    assert signal.score == 0


def test_conflicting_factors_hold_with_sentiment_adjustment():
    # RSI sobrevendido (bull 2) contra MACD bearish (bear 2)
    snap = IndicatorSnapshot(price=100.0, rsi=25.0, macd=-1.0, macd_signal=0.0,
                             macd_histogram=-1.0, bb_upper=105.0, bb_middle=100.0, bb_lower=95.0,
                             adx=22.0, adx_strength='MODERATE')
    signal = SignalScorer().score('BTCUSDT', snap, NEGATIVE, LIQUID)
    assert signal.direction == SignalDirection.HOLD
    # 30 - 15 * 0.8
    assert signal.confidence == 18
    assert signal.score == max(signal.bullish_score, signal.bearish_score)


def test_falling_market_sells():
    signal = score_frame(falling_frame(), sentiment=NEGATIVE)
    assert signal.direction == SignalDirection.SELL
    assert signal.bearish_score > signal.bullish_score + 3
    assert signal.side == 'Sell'


def test_scoring_is_pure():
    df = rising_frame()
    first = score_frame(df, sentiment=POSITIVE)
    second = score_frame(df, sentiment=POSITIVE)
    assert first == second
    assert first.factors == second.factors
    assert first.confidence == second.confidence


def test_leverage_steps():
    assert leverage_for_confidence(69, 70) == 0
    assert leverage_for_confidence(70, 70) == 2
    assert leverage_for_confidence(76, 70) == 3
    assert leverage_for_confidence(80, 70) == 5
    assert leverage_for_confidence(85, 70) == 7
    assert leverage_for_confidence(90, 70) == 8
    assert leverage_for_confidence(95, 70) == 10


def test_stop_and_target_scale_with_leverage():
    params = ParameterSet(stop_loss_percent=10, take_profit_percent=15)
    assert stop_and_target(100.0, 'Buy', 5, params) == (98.0, 103.0)
    assert stop_and_target(100.0, 'Sell', 5, params) == (102.0, 97.0)


def test_atr_levels_respect_support():
    volume = VolumeAnalysis(nearest_support=97.0)
    levels = atr_stop_and_target(100.0, 'Buy', atr=2.0, volume=volume)
    # suporte entre 1x e 2x ATR vira o stop
    assert levels['stop_loss'] == 97.0
    assert levels['take_profit'] == 108.0
    assert atr_stop_and_target(100.0, 'Buy', atr=0.0)['risk_reward'] == 0.0
