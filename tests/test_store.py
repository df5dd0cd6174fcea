import json
from datetime import timedelta

import pytest

from autotrader.error_handling import PersistenceFailure
from autotrader.store import TradeStore

from conftest import T0


def entry(symbol='BTCUSDT', minutes=0):
    return {
        'symbol': symbol, 'side': 'Buy', 'entry_price': 100.0, 'quantity': 1.0, 'leverage': 5,
        'entry_time': (T0 + timedelta(minutes=minutes)).isoformat(),
    }


def test_insert_assigns_sequential_ids(store):
    assert store.insert_trade(entry()) == '1'
    assert store.insert_trade(entry('ETHUSDT')) == '2'
    assert len(store) == 2

    with open(store.path, encoding='utf-8') as f:
        saved = json.load(f)
    assert [t['id'] for t in saved] == ['1', '2']
    assert saved[0]['status'] == 'open'


def test_update_exit_matches_open_trade(store):
    store.insert_trade(entry())
    updated = store.update_trade_exit('BTCUSDT', T0.isoformat(), {
        'exit_price': 98.0, 'exit_reason': 'stop_loss', 'pnl': -2.0, 'status': 'closed',
        'exit_time': (T0 + timedelta(hours=1)).isoformat(),
    })
    assert updated
    assert store.query_trades(status='closed')[0]['exit_reason'] == 'stop_loss'
    # ja fechado: nada a atualizar
    assert not store.update_trade_exit('BTCUSDT', T0.isoformat(), {'status': 'closed'})


def test_update_exit_matches_side(store):
    store.insert_trade(entry())
    store.insert_trade(dict(entry(), side='Sell'))

    assert store.update_trade_exit('BTCUSDT', T0.isoformat(), {'status': 'closed', 'pnl': 1.0}, side='Buy')

    closed = store.query_trades(status='closed')
    assert [(t['id'], t['side']) for t in closed] == [('1', 'Buy')]
    assert store.query_trades(status='open')[0]['side'] == 'Sell'


def test_update_stop_keeps_trade_open(store):
    store.insert_trade(entry())
    store.insert_trade(dict(entry(), side='Sell'))

    assert store.update_trade_stop('BTCUSDT', T0.isoformat(), 102.9, side='Sell')
    trades = {t['side']: t for t in store.query_trades(status='open')}
    assert trades['Sell']['stop_loss'] == 102.9
    assert 'stop_loss' not in trades['Buy']
    assert not store.update_trade_stop('ETHUSDT', T0.isoformat(), 50.0)


def test_query_filters_and_order(store):
    store.insert_trade(entry('BTCUSDT', 0))
    store.insert_trade(entry('ETHUSDT', 10))
    store.insert_trade(entry('BTCUSDT', 20))

    assert [t['id'] for t in store.query_trades()] == ['3', '2', '1']
    assert [t['id'] for t in store.query_trades(instrument='BTCUSDT')] == ['3', '1']
    assert [t['id'] for t in store.query_trades(since=T0 + timedelta(minutes=5))] == ['3', '2']
    assert len(store.query_trades(limit=1)) == 1


def test_reload_from_disk(store):
    store.insert_trade(entry())
    reloaded = TradeStore(store.path)
    assert reloaded.query_trades()[0]['symbol'] == 'BTCUSDT'


def test_write_failure_raises_and_rolls_back(tmp_path):
    blocker = tmp_path / 'blocker'
    blocker.write_text('arquivo comum')
    store = TradeStore(str(blocker / 'trades.json'))

    with pytest.raises(PersistenceFailure):
        store.insert_trade(entry())
    assert len(store) == 0
    assert not store.check_writable()
