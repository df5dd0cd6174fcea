"""
Fixtures compartilhadas: exchange falsa em memoria, store em tmp_path e
geradores de candles sinteticos deterministicos.
"""
import os
import tempfile

# Config de teste isolado (antes de importar autotrader)
os.environ.setdefault(
    'AUTOTRADER_CONFIG',
    os.path.join(tempfile.mkdtemp(prefix='autotrader-test-'), 'settings.json'),
)

from datetime import datetime, timezone

import numpy as np
import pandas as pd
import pytest

from autotrader.error_handling import ExchangeCallFailed, reset_all_circuit_breakers
from autotrader.models import OHLCV_COLUMNS, ParameterSet, Signal, SignalDirection
from autotrader.store import TradeStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_frame(closes, volumes=None, spread=0.0005, start=T0) -> pd.DataFrame:
    """OHLCV a partir dos fechamentos; open = fechamento anterior."""
    closes = np.asarray(closes, dtype=float)
    opens = np.r_[closes[0], closes[:-1]]
    high = np.maximum(opens, closes) * (1 + spread)
    low = np.minimum(opens, closes) * (1 - spread)
    if volumes is None:
        volumes = np.full(len(closes), 1000.0)
    return pd.DataFrame({
        'timestamp': pd.date_range(start, periods=len(closes), freq='5min'),
        'open': opens,
        'high': high,
        'low': low,
        'close': closes,
        'volume': np.asarray(volumes, dtype=float),
    }, columns=OHLCV_COLUMNS)


def rising_frame(n=200, growth=0.005, start_price=100.0, last_volume_mult=3.0) -> pd.DataFrame:
    """Fechamentos estritamente crescentes com pico de volume no ultimo candle."""
    closes = start_price * (1 + growth) ** np.arange(n)
    volumes = np.full(n, 1000.0)
    volumes[-1] = 1000.0 * last_volume_mult
    return make_frame(closes, volumes)


def falling_frame(n=200, decay=0.005, start_price=100.0, last_volume_mult=3.0) -> pd.DataFrame:
    closes = start_price * (1 - decay) ** np.arange(n)
    volumes = np.full(n, 1000.0)
    volumes[-1] = 1000.0 * last_volume_mult
    return make_frame(closes, volumes)


def flat_frame(n=200, price=100.0, last_volume=50.0) -> pd.DataFrame:
    """Lateral, baixa volatilidade, volume secando no ultimo candle."""
    np.random.seed(42)
    closes = price + np.random.uniform(-0.01, 0.01, n)
    volumes = np.full(n, 1000.0)
    volumes[-1] = last_volume
    return make_frame(closes, volumes, spread=0.0001)


def make_signal(instrument='BTCUSDT', direction=SignalDirection.BUY, confidence=80.0,
                price=100.0, leverage=5, timestamp='') -> Signal:
    return Signal(
        instrument=instrument,
        timestamp=timestamp or T0.isoformat(),
        direction=direction,
        confidence=confidence,
        score=20.0,
        leverage=leverage,
        price=price,
        details={'indicators': {'rsi': 45.0, 'trend': 'bullish', 'volume_ratio': 1.5}},
    )


class FakeExchange:
    """Exchange em memoria com falhas injetaveis."""

    def __init__(self, balance=1000.0):
        self.balance = balance
        self.frames = {}
        self.prices = {}
        self.fill_prices = {}
        self.remote_positions = []
        self.fills = []
        self.opened = []
        self.closed = []
        self.candle_requests = []
        self.stop_updates = []
        self.fail_open = set()
        self.fail_close = set()
        self.fail_candles = set()
        self.fail_balance = False
        self.fail_positions = False
        self.consecutive_failures = 0

    def get_candles(self, instrument, interval='5m', limit=200):
        self.candle_requests.append(instrument)
        if instrument in self.fail_candles:
            raise ExchangeCallFailed(f"fetch_ohlcv {instrument}", 'timeout')
        return self.frames.get(instrument, pd.DataFrame(columns=OHLCV_COLUMNS))

    def get_price(self, instrument):
        return self.prices.get(instrument, 0.0)

    def get_balance(self):
        if self.fail_balance:
            raise ExchangeCallFailed('fetch_balance', 'timeout')
        return self.balance

    def open_position(self, instrument, side, quantity, leverage, stop_loss, take_profit):
        if instrument in self.fail_open:
            raise ExchangeCallFailed(f"open {instrument} {side}", 'timeout', unknown_outcome=True)
        order_id = str(len(self.opened) + 1)
        self.opened.append({
            'symbol': instrument, 'side': side, 'quantity': quantity, 'leverage': leverage,
            'stop_loss': stop_loss, 'take_profit': take_profit,
        })
        entry = self.fill_prices.get(instrument) or self.prices.get(instrument, 0.0)
        self.remote_positions.append({
            'symbol': instrument, 'side': side, 'entry_price': entry, 'quantity': quantity,
            'leverage': leverage, 'mark_price': entry, 'opened_at': None,
        })
        return {'order_id': order_id, 'price': self.fill_prices.get(instrument)}

    def close_position(self, instrument, side, quantity):
        if instrument in self.fail_close:
            raise ExchangeCallFailed(f"close {instrument} {side}", 'timeout', unknown_outcome=True)
        self.closed.append({'symbol': instrument, 'side': side, 'quantity': quantity})
        self.remote_positions = [
            p for p in self.remote_positions if not (p['symbol'] == instrument and p['side'] == side)
        ]
        return {'order_id': f"c{len(self.closed)}", 'price': None}

    def set_stop_loss(self, instrument, side, stop_loss):
        self.stop_updates.append((instrument, side, stop_loss))
        return True

    def get_open_positions(self):
        if self.fail_positions:
            raise ExchangeCallFailed('fetch_positions', 'timeout')
        return [dict(p) for p in self.remote_positions]

    def get_trade_history(self, limit=100):
        return list(self.fills)[-limit:]


@pytest.fixture(autouse=True)
def reset_breakers():
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def store(tmp_path):
    return TradeStore(str(tmp_path / 'trades.json'))


@pytest.fixture
def params():
    return ParameterSet(confidence_threshold=70, stop_loss_percent=10, take_profit_percent=50)
