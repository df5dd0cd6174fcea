"""
Testes do Adaptive Parameter Learner e do ParameterStore.
"""
import json
import threading
from dataclasses import replace
from datetime import timedelta

from autotrader.learner import AdaptiveLearner, ParameterStore, PatternAnalyzer, analyze_performance
from autotrader.models import ParameterSet

from conftest import T0

BOUNDS = {
    'confidence_threshold': [50, 95],
    'stop_loss_percent': [1, 25],
    'take_profit_percent': [2, 60],
    'max_trades_per_day': [5, 100],
    'risk_per_trade': [1, 20],
}
NOW = T0 + timedelta(hours=2)


def closed_trade(symbol, pnl, exit_time=None, **entry):
    record = {
        'symbol': symbol,
        'side': 'Buy',
        'entry_price': 100.0,
        'entry_time': T0.isoformat(),
        'quantity': 1.0,
        'leverage': 5,
        'status': 'closed',
        'exit_price': 100.0 + pnl,
        'exit_time': (exit_time or T0 + timedelta(hours=1)).isoformat(),
        'exit_reason': 'take_profit' if pnl > 0 else 'stop_loss',
        'pnl': pnl,
    }
    record.update(entry)
    return record


def add_trades(store, symbol, wins, losses, win_pnl=10.0, loss_pnl=-5.0, **kwargs):
    for _ in range(wins):
        store.insert_trade(closed_trade(symbol, win_pnl, **kwargs))
    for _ in range(losses):
        store.insert_trade(closed_trade(symbol, loss_pnl, **kwargs))


def make_learner(store, initial=None, path=None):
    parameters = ParameterStore(initial or ParameterSet(), path=path)
    return AdaptiveLearner(store, parameters, bounds=BOUNDS), parameters


def test_losing_instrument_disabled_and_threshold_raised(store):
    add_trades(store, 'XUSDT', wins=2, losses=8)
    learner, parameters = make_learner(store)

    report = learner.run(now=NOW)
    params = parameters.snapshot()

    assert report.performance.total_trades == 10
    assert report.performance.win_rate == 20.0
    assert 'XUSDT' in params.disabled_instruments
    assert params.confidence_threshold == 75
    assert params.active_universe(['BTCUSDT', 'XUSDT', 'ETHUSDT']) == ['BTCUSDT', 'ETHUSDT']
    # PnL agregado negativo: so aviso
    assert report.performance.total_pnl == -20.0
    assert report.performance.roi == -20.0
    assert report.advisories
    assert params.max_trades_per_day == 50


def test_threshold_clamped_with_conflict(store):
    add_trades(store, 'AUSDT', wins=0, losses=2)
    learner, parameters = make_learner(store, ParameterSet(confidence_threshold=93))

    report = learner.run(now=NOW)

    assert parameters.snapshot().confidence_threshold == 95
    assert [c.name for c in report.conflicts] == ['confidence_threshold']
    assert ('confidence_threshold', 93, 95) in report.changes


def test_many_trades_reduce_daily_cap(store):
    add_trades(store, 'AUSDT', wins=36, losses=24)
    learner, parameters = make_learner(store)

    learner.run(now=NOW)
    params = parameters.snapshot()

    assert params.max_trades_per_day == 30
    assert params.confidence_threshold == 70
    assert params.disabled_instruments == frozenset()


def test_winning_instrument_prioritized(store):
    add_trades(store, 'SOLUSDT', wins=4, losses=1)
    learner, parameters = make_learner(store)

    learner.run(now=NOW)
    params = parameters.snapshot()

    assert params.prioritized_instruments == ('SOLUSDT',)
    assert params.active_universe(['BTCUSDT', 'SOLUSDT']) == ['SOLUSDT', 'BTCUSDT']


def test_instrument_with_few_trades_untouched(store):
    add_trades(store, 'XUSDT', wins=0, losses=2)
    add_trades(store, 'BTCUSDT', wins=8, losses=0)
    learner, parameters = make_learner(store)

    learner.run(now=NOW)
    assert 'XUSDT' not in parameters.snapshot().disabled_instruments


def test_no_trades_no_changes(store):
    learner, parameters = make_learner(store)
    before = parameters.snapshot()

    report = learner.run(now=NOW)

    assert not report.applied
    assert report.advisories == []
    assert parameters.snapshot() is before


def test_trades_outside_window_ignored(store):
    add_trades(store, 'XUSDT', wins=0, losses=5, exit_time=T0 - timedelta(hours=48))
    learner, parameters = make_learner(store)

    report = learner.run(now=NOW)

    assert report.performance.total_trades == 0
    assert parameters.snapshot() == ParameterSet()


def test_analyze_performance_stats():
    trades = [closed_trade('A', 10.0), closed_trade('A', -5.0), closed_trade('B', 0.0),
              {'symbol': 'C', 'status': 'open', 'pnl': None}]
    report = analyze_performance(trades, now=NOW)
    assert report.total_trades == 3
    assert report.wins == 1 and report.losses == 2
    assert report.avg_win == 10.0
    assert report.avg_loss == 2.5
    assert report.profit_factor == 4.0
    assert report.best_trade['pnl'] == 10.0
    assert report.per_instrument['A'].win_rate == 50.0


def test_parameter_store_persists(tmp_path):
    path = str(tmp_path / 'parameters.json')
    parameters = ParameterStore(path=path)
    updated = ParameterSet(confidence_threshold=80, disabled_instruments=frozenset({'XUSDT'}))
    previous = parameters.swap(updated)
    assert previous == ParameterSet()

    reloaded = ParameterStore(path=path).load()
    assert reloaded == updated


def test_manual_enable_and_disable(store):
    learner, parameters = make_learner(store)
    assert learner.disable_instrument('XUSDT')
    assert not learner.disable_instrument('XUSDT')
    assert 'XUSDT' in parameters.snapshot().disabled_instruments

    assert learner.enable_instrument('XUSDT')
    assert parameters.snapshot().disabled_instruments == frozenset()


def test_pattern_insights_are_advisory(store):
    for _ in range(3):
        store.insert_trade(closed_trade('AUSDT', 10.0, entry_rsi=30.0, entry_confidence=85.0,
                                        entry_volume_ratio=1.5, entry_trend='bullish'))
        store.insert_trade(closed_trade('BUSDT', -5.0, entry_rsi=60.0, entry_confidence=72.0,
                                        entry_volume_ratio=1.4, entry_trend='bullish'))

    patterns = PatternAnalyzer().analyze(store.query_trades())
    kinds = {(i['type'], i.get('indicator') or i.get('parameter')) for i in patterns['insights']}
    assert kinds == {('indicator', 'rsi'), ('threshold', 'confidence_threshold')}
    threshold = next(i for i in patterns['insights'] if i['type'] == 'threshold')
    assert threshold['suggested_value'] == 80.0

    learner, parameters = make_learner(store)
    learner.run(now=NOW)
    # insight nao altera threshold (WR 50%)
    assert parameters.snapshot().confidence_threshold == 70


def test_pattern_analyzer_without_trades():
    assert PatternAnalyzer().analyze([])['status'] == 'insufficient_data'


def test_many_trades_never_raise_lower_cap(store):
    add_trades(store, 'AUSDT', wins=36, losses=24)
    learner, parameters = make_learner(store, ParameterSet(max_trades_per_day=10))

    report = learner.run(now=NOW)

    assert parameters.snapshot().max_trades_per_day == 10
    assert 'max_trades_per_day' not in [name for name, _, _ in report.changes]


def test_loaded_parameters_clamped_to_bounds(tmp_path):
    path = tmp_path / 'parameters.json'
    path.write_text(json.dumps({'confidence_threshold': 150, 'max_trades_per_day': 0}))

    parameters = ParameterStore(path=str(path), bounds=BOUNDS)
    loaded = parameters.load()

    assert loaded.confidence_threshold == 95
    assert loaded.max_trades_per_day == 5
    assert parameters.snapshot() is loaded


def test_invalid_parameters_file_ignored(tmp_path):
    path = tmp_path / 'parameters.json'
    path.write_text(json.dumps([1, 2, 3]))
    assert ParameterStore(path=str(path), bounds=BOUNDS).load() == ParameterSet()


def test_update_applies_on_current_set():
    parameters = ParameterStore()
    previous, new = parameters.update(lambda current: replace(current, confidence_threshold=80))
    assert previous == ParameterSet()
    assert new.confidence_threshold == 80
    assert parameters.snapshot() is new

    # fn que devolve o mesmo objeto nao troca
    before, after = parameters.update(lambda current: current)
    assert before is after is new


def test_concurrent_overrides_are_not_lost(store):
    learner, parameters = make_learner(store)
    instruments = [f"X{i}USDT" for i in range(20)]
    threads = [threading.Thread(target=learner.disable_instrument, args=(s,)) for s in instruments]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert parameters.snapshot().disabled_instruments == frozenset(instruments)


def test_learner_keeps_override_made_before_its_update(store):
    add_trades(store, 'XUSDT', wins=2, losses=8)

    class OverrideFirst(ParameterStore):
        """Override do operador entra logo antes do update do learner."""
        def update(self, fn):
            if not getattr(self, 'overridden', False):
                self.overridden = True
                super().update(lambda current: replace(
                    current, disabled_instruments=current.disabled_instruments | {'YUSDT'}))
            return super().update(fn)

    parameters = OverrideFirst()
    learner = AdaptiveLearner(store, parameters, bounds=BOUNDS)
    learner.run(now=NOW)

    assert parameters.snapshot().disabled_instruments == frozenset({'XUSDT', 'YUSDT'})
