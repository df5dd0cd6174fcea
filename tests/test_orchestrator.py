"""
Testes do Cycle Orchestrator e do CycleTicker.
"""
import threading
from dataclasses import replace
from datetime import timedelta

import numpy as np

from autotrader.error_handling import record_critical_failure
from autotrader.learner import AdaptiveLearner, ParameterStore
from autotrader.models import Allocation
from autotrader.monitoring import SystemDiagnostics
from autotrader.orchestrator import CycleOrchestrator, CycleTicker
from autotrader.positions import PositionSupervisor
from autotrader.risk import RiskManager
from autotrader.scoring import SignalScorer
from autotrader.sentiment import StaticSentiment

from conftest import T0, make_frame, make_signal, rising_frame

NOW = T0 + timedelta(hours=1)


def feed(exchange, instrument, df):
    exchange.frames[instrument] = df
    exchange.prices[instrument] = float(df['close'].iloc[-1])


def build(exchange, store, params, symbols, **kwargs):
    supervisor = PositionSupervisor(exchange, store)
    orchestrator = CycleOrchestrator(
        exchange, supervisor, ParameterStore(params), SignalScorer(), RiskManager(), symbols,
        sentiment=kwargs.pop('sentiment', StaticSentiment(60, 80)), **kwargs
    )
    return orchestrator, supervisor


def test_rising_instrument_opens_position(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    orchestrator, supervisor = build(exchange, store, params, ['BTCUSDT'])

    report = orchestrator.run_cycle(NOW)

    assert report.cycle == 1
    assert report.balance == 1000.0
    assert [s.instrument for s in report.actionable] == ['BTCUSDT']
    assert [p.instrument for p in report.opened] == ['BTCUSDT']
    assert exchange.opened[0]['side'] == 'Buy'
    assert supervisor.get('BTCUSDT', 'Buy') is report.opened[0]
    assert len(store) == 1
    assert orchestrator.last_update is not None


def test_disabled_instrument_not_fetched(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    feed(exchange, 'ETHUSDT', rising_frame(start_price=50.0))
    params = replace(params, disabled_instruments=frozenset({'ETHUSDT'}))
    orchestrator, _ = build(exchange, store, params, ['BTCUSDT', 'ETHUSDT'])

    report = orchestrator.run_cycle(NOW)

    assert report.universe == ['BTCUSDT']
    assert exchange.candle_requests == ['BTCUSDT']
    assert [s.instrument for s in report.signals] == ['BTCUSDT']


def test_instrument_failure_is_isolated(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    feed(exchange, 'ETHUSDT', rising_frame(start_price=50.0))
    exchange.fail_candles.add('ETHUSDT')
    orchestrator, _ = build(exchange, store, params, ['BTCUSDT', 'ETHUSDT', 'XRPUSDT'])

    report = orchestrator.run_cycle(NOW)

    assert set(report.failed) == {'ETHUSDT', 'XRPUSDT'}
    assert [p.instrument for p in report.opened] == ['BTCUSDT']


def test_daily_cap_skips_extra_signals(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    feed(exchange, 'ETHUSDT', rising_frame(start_price=50.0))
    params = replace(params, max_trades_per_day=1)
    orchestrator, _ = build(exchange, store, params, ['BTCUSDT', 'ETHUSDT'])

    first = orchestrator.run_cycle(NOW)
    assert len(first.opened) == 1
    assert len(first.skipped) == 1

    second = orchestrator.run_cycle(NOW + timedelta(minutes=5))
    assert second.opened == []
    assert {s.instrument for s in second.skipped} == {'BTCUSDT', 'ETHUSDT'}
    assert len(exchange.opened) == 1


def test_reconciliation_failure_blocks_entries(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    exchange.fail_positions = True
    orchestrator, _ = build(exchange, store, params, ['BTCUSDT'])

    report = orchestrator.run_cycle(NOW)

    assert report.entries_blocked == 'reconciliation_failed'
    assert report.signals
    assert report.opened == []
    assert exchange.opened == []


def test_balance_failure_blocks_entries(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    exchange.fail_balance = True
    orchestrator, _ = build(exchange, store, params, ['BTCUSDT'])

    report = orchestrator.run_cycle(NOW)
    assert report.entries_blocked == 'balance_unavailable'
    assert report.opened == []

    exchange.fail_balance = False
    exchange.balance = 0.0
    assert orchestrator.run_cycle(NOW).entries_blocked == 'zero_balance'


def test_exit_checked_for_position_outside_universe(exchange, store, params):
    feed(exchange, 'BTCUSDT', make_frame(list(np.full(60, 100.0)) + [97.0]))
    params = replace(params, disabled_instruments=frozenset({'BTCUSDT'}))
    orchestrator, supervisor = build(exchange, store, params, ['BTCUSDT'])

    signal = make_signal(price=100.0, leverage=5)
    supervisor.open_position(Allocation(signal, 1.0, 5, 20.0, 2.0), params, now=T0)

    report = orchestrator.run_cycle(NOW)

    assert report.universe == []
    assert report.signals == []
    assert [p.exit_reason for p in report.exits] == ['stop_loss']
    assert supervisor.open_positions() == []


def test_periodic_learner_and_diagnostics(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    parameters = ParameterStore(params)
    supervisor = PositionSupervisor(exchange, store)
    learner = AdaptiveLearner(store, parameters)
    diagnostics = SystemDiagnostics(store=store, exchange=exchange, memory_warning_mb=1e9)
    orchestrator = CycleOrchestrator(
        exchange, supervisor, parameters, SignalScorer(), RiskManager(), ['BTCUSDT'],
        learner=learner, diagnostics=diagnostics,
        settings={'learner_every': 1, 'diagnostic_every': 2},
    )

    first = orchestrator.run_cycle(NOW)
    assert first.learner is not None
    assert first.diagnostics is None

    second = orchestrator.run_cycle(NOW + timedelta(minutes=5))
    assert second.diagnostics['status'] == 'healthy'
    assert orchestrator.get_status()['health']['diagnostics'] == 'healthy'


def losing_trade(symbol, pnl, minutes):
    return {
        'symbol': symbol, 'side': 'Buy', 'entry_price': 100.0, 'quantity': 1.0, 'leverage': 5,
        'entry_time': T0.isoformat(), 'status': 'closed', 'pnl': pnl,
        'exit_time': (T0 + timedelta(minutes=minutes)).isoformat(),
    }


def test_instrument_disabled_by_learner_leaves_next_cycles(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    for i in range(10):
        store.insert_trade(losing_trade('XUSDT', 10.0 if i < 2 else -5.0, i))
    parameters = ParameterStore(params)
    orchestrator = CycleOrchestrator(
        exchange, PositionSupervisor(exchange, store), parameters, SignalScorer(), RiskManager(),
        ['BTCUSDT', 'XUSDT'], learner=AdaptiveLearner(store, parameters),
        sentiment=StaticSentiment(60, 80), settings={'learner_every': 2},
    )

    first = orchestrator.run_cycle(NOW)
    assert first.learner is None
    assert 'XUSDT' in exchange.candle_requests

    exchange.candle_requests.clear()
    second = orchestrator.run_cycle(NOW + timedelta(minutes=5))
    assert 'XUSDT' in parameters.snapshot().disabled_instruments
    assert ('confidence_threshold', 70, 75) in second.learner.changes
    assert second.universe == ['BTCUSDT']
    assert 'XUSDT' not in exchange.candle_requests

    exchange.candle_requests.clear()
    third = orchestrator.run_cycle(NOW + timedelta(minutes=10))
    assert third.universe == ['BTCUSDT']
    assert 'XUSDT' not in exchange.candle_requests


def test_status_snapshot(exchange, store, params):
    feed(exchange, 'BTCUSDT', rising_frame())
    orchestrator, _ = build(exchange, store, params, ['BTCUSDT'])
    orchestrator.run_cycle(NOW)

    status = orchestrator.get_status()

    assert set(status) == {
        'balance', 'open_positions', 'recent_signals', 'recent_trades', 'parameters',
        'is_running', 'last_update', 'health', 'cycle_count',
    }
    assert status['cycle_count'] == 1
    assert status['balance'] == 1000.0
    assert status['open_positions'][0]['instrument'] == 'BTCUSDT'
    assert status['recent_signals'][0]['instrument'] == 'BTCUSDT'
    assert status['parameters']['confidence_threshold'] == 70
    assert not status['is_running']
    assert orchestrator.last_report.to_dict()['opened'] == ['BTCUSDT:Buy']


# =============================================================================
# TICKER
# =============================================================================

class BlockingOrchestrator:
    def __init__(self, fail=False):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self.fail = fail
        self.is_running = False

    def run_cycle(self, now=None):
        self.calls += 1
        self.started.set()
        self.release.wait(5)
        if self.fail:
            raise RuntimeError('ciclo quebrou')
        return 'report'


def test_tick_skipped_while_cycle_running():
    stub = BlockingOrchestrator()
    ticker = CycleTicker(stub, interval=60)

    worker = threading.Thread(target=ticker.tick)
    worker.start()
    assert stub.started.wait(5)

    assert ticker.busy
    assert ticker.tick() is None
    assert ticker.skipped_ticks == 1

    stub.release.set()
    worker.join(5)
    assert not ticker.busy
    assert stub.calls == 1


def test_tick_error_is_logged_and_lock_released():
    stub = BlockingOrchestrator(fail=True)
    stub.release.set()
    ticker = CycleTicker(stub, interval=60)

    assert ticker.tick() is None
    assert not ticker.busy
    assert ticker.tick() is None
    assert stub.calls == 2


def test_ticker_start_and_stop():
    stub = BlockingOrchestrator()
    stub.release.set()
    ticker = CycleTicker(stub, interval=60)

    ticker.start()
    assert stub.started.wait(5)
    assert stub.is_running
    assert ticker.is_running

    ticker.stop(timeout=5)
    assert not ticker.is_running
    assert not stub.is_running
    assert stub.calls == 1


def test_status_health_uses_configured_auth_threshold(exchange, store, params):
    orchestrator, _ = build(exchange, store, params, ['BTCUSDT'], critical_threshold=2)
    record_critical_failure('invalid api key')
    assert orchestrator.get_status()['health']['status'] == 'degraded'

    record_critical_failure('invalid api key')
    assert orchestrator.get_status()['health']['status'] == 'critical'
