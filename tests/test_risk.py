"""
Testes do Risk & Allocation Manager.
"""
from autotrader.models import ParameterSet, Position, PositionStatus, SignalDirection
from autotrader.risk import RiskManager, open_exposure

from conftest import make_signal


def open_position(instrument='BTCUSDT', side='Buy', entry=100.0, quantity=1.0, leverage=5):
    position = Position(instrument=instrument, side=side, entry_price=entry, quantity=quantity,
                        leverage=leverage, stop_loss=98.0, take_profit=110.0,
                        opened_at='2024-01-01T00:00:00+00:00')
    position.transition(PositionStatus.OPEN)
    return position


def test_below_threshold_never_selected():
    risk = RiskManager()
    params = ParameterSet(confidence_threshold=75)
    signal = make_signal(confidence=74.9)
    result = risk.select([signal], 1000.0, [], params)
    assert result.accepted == []
    assert result.rejected == [(signal, 'confidence_below_threshold')]


def test_minimum_fraction_above_ceiling_rejected():
    risk = RiskManager(min_quantities={'BTCUSDT': 0.001})
    # 0.001 * 50000 / 2 = 25 -> 25% de 100
    signal = make_signal(price=50000.0, leverage=2)
    result = risk.select([signal], 100.0, [], ParameterSet())
    assert result.accepted == []
    assert result.rejected[0][1] == 'insufficient_budget'


def test_ceiling_follows_risk_per_trade():
    risk = RiskManager(default_min_quantity=1.0)
    # custo minimo 15% do saldo
    signal = make_signal(price=30.0, leverage=2)
    assert risk.select([signal], 100.0, [], ParameterSet(risk_per_trade=20)).accepted
    rejected = risk.select([signal], 100.0, [], ParameterSet(risk_per_trade=10)).rejected
    assert rejected[0][1] == 'insufficient_budget'


def test_smallest_band_fraction_used():
    risk = RiskManager(min_quantities={'BTCUSDT': 0.001})
    allocation = risk.size(make_signal(price=100.0, leverage=5), 1000.0, ParameterSet())
    # minimo cabe em 5%: 50 de margem, 250 de nocional
    assert round(allocation.capital_cost, 6) == 50.0
    assert round(allocation.quantity, 6) == 2.5
    assert allocation.leverage == 5


def test_total_allocation_never_exceeds_equity():
    risk = RiskManager(default_min_quantity=1.0)
    signals = [make_signal(instrument=f"C{i}USDT", price=30.0, leverage=2, confidence=80 + i)
               for i in range(7)]
    result = risk.select(signals, 100.0, [], ParameterSet())

    assert len(result.accepted) == 6
    assert result.total_cost <= 100.0
    assert result.rejected[0][1] == 'exceeds_available_balance'
    # menor confianca fica de fora
    assert result.rejected[0][0].instrument == 'C0USDT'


def test_priority_is_descending_confidence():
    risk = RiskManager()
    signals = [make_signal('AUSDT', confidence=75), make_signal('BUSDT', confidence=90),
               make_signal('CUSDT', confidence=82)]
    result = risk.select(signals, 10000.0, [], ParameterSet())
    assert [a.instrument for a in result.accepted] == ['BUSDT', 'CUSDT', 'AUSDT']


def test_prioritized_instrument_breaks_ties():
    risk = RiskManager()
    signals = [make_signal('AUSDT', confidence=80), make_signal('ZUSDT', confidence=80)]
    params = ParameterSet(prioritized_instruments=('ZUSDT',))
    result = risk.select(signals, 10000.0, [], params)
    assert [a.instrument for a in result.accepted] == ['ZUSDT', 'AUSDT']


def test_open_position_blocks_same_side_and_counts_exposure():
    risk = RiskManager()
    held = open_position(quantity=90.0, leverage=1)  # 9000 de margem
    assert open_exposure([held]) == 9000.0

    same = make_signal('BTCUSDT')
    other = make_signal('ETHUSDT', price=100.0, leverage=1)
    result = risk.select([same, other], 10000.0, [held], ParameterSet())

    assert (same, 'position_already_open') in result.rejected
    assert result.accepted[0].instrument == 'ETHUSDT'
    # 5% de 10000 = 500, cabe nos 1000 restantes
    assert round(result.accepted[0].capital_cost, 6) == 500.0


def test_hold_signals_are_ignored():
    risk = RiskManager()
    hold = make_signal(direction=SignalDirection.HOLD, leverage=0)
    result = risk.select([hold], 1000.0, [], ParameterSet())
    assert result.accepted == [] and result.rejected == []
