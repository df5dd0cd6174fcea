import numpy as np
import pandas as pd

from autotrader.indicators import NEUTRAL
from autotrader.volume import (
    VolumeAnalysis, analyze_liquidity, analyze_order_flow, analyze_volume,
    analyze_volume_profile, identify_support_resistance,
)

from conftest import falling_frame, flat_frame, make_frame, rising_frame


def test_short_history_is_neutral():
    df = make_frame(np.linspace(100, 101, 10))
    assert analyze_volume_profile(df)['signal'] == NEUTRAL
    assert analyze_order_flow(df)['pressure'] == NEUTRAL
    assert identify_support_resistance(df)['signal'] == NEUTRAL
    liquidity = analyze_liquidity(df)
    assert liquidity['liquidity'] == 'LOW'
    assert liquidity['score'] == 0


def test_empty_frame_gives_default_analysis():
    assert analyze_volume(pd.DataFrame()) == VolumeAnalysis()


def test_order_flow_follows_candle_bodies():
    assert analyze_order_flow(rising_frame())['pressure'] == 'STRONG_BUY'
    assert analyze_order_flow(falling_frame())['pressure'] == 'STRONG_SELL'


def test_liquidity_tiers():
    assert analyze_liquidity(rising_frame(last_volume_mult=3.0))['liquidity'] == 'VERY_HIGH'

    dry = analyze_liquidity(flat_frame(last_volume=50.0))
    assert dry['liquidity'] == 'VERY_LOW'
    assert dry['score'] == 20


def test_flat_price_range_profile():
    n = 30
    df = pd.DataFrame({
        'timestamp': pd.date_range('2024-01-01', periods=n, freq='5min', tz='UTC'),
        'open': [50.0] * n, 'high': [50.0] * n, 'low': [50.0] * n,
        'close': [50.0] * n, 'volume': [10.0] * n,
    })
    profile = analyze_volume_profile(df)
    assert profile['signal'] == NEUTRAL
    assert profile['poc'] == 50.0


def test_value_area_brackets_poc():
    np.random.seed(42)
    closes = 100 + np.cumsum(np.random.normal(0, 0.5, 150))
    profile = analyze_volume_profile(make_frame(closes))
    assert profile['val'] <= profile['poc'] <= profile['vah']


def test_support_below_resistance_on_oscillation():
    closes = 100 + 5 * np.sin(np.arange(120) / 5)
    sr = identify_support_resistance(make_frame(closes))
    assert sr['supports'] and sr['resistances']
    assert max(sr['supports']) < min(sr['resistances'])


def test_analyze_volume_combines_parts():
    analysis = analyze_volume(rising_frame())
    assert analysis.order_flow == 'STRONG_BUY'
    assert analysis.liquidity_score == 100
    assert analysis.to_dict()['liquidity'] == {'tier': 'VERY_HIGH', 'score': 100}
