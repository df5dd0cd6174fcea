import json
import os

from autotrader.config import (
    CONFIG_FILE, DEFAULT_CONFIG, Config, get_circuit_breaker_config, get_parameter_bounds,
    get_parameter_defaults, get_symbols,
)
from autotrader.models import ParameterSet


def test_defaults_and_dotted_access():
    assert Config.get('exchange.id') == 'bybit'
    assert os.path.exists(CONFIG_FILE)
    assert Config.get('cycle.missing', 'x') == 'x'
    assert len(get_symbols()) == 15
    assert get_circuit_breaker_config('orders')['failure_threshold'] == 3
    assert get_parameter_bounds()['confidence_threshold'] == [50, 95]
    initial = ParameterSet.from_dict(get_parameter_defaults())
    assert initial.confidence_threshold == 70
    assert initial.prioritized_instruments == ('BTCUSDT', 'ETHUSDT')


def test_section_is_a_copy():
    section = Config.get_section('cycle')
    section['interval_seconds'] = 1
    assert Config.get('cycle.interval_seconds') == DEFAULT_CONFIG['cycle']['interval_seconds']


def test_set_and_reload_from_file():
    Config.set('cycle.learner_every', 6, save=False)
    assert Config.get('cycle.learner_every') == 6
    assert Config.get_all()['cycle']['learner_every'] == 6

    # sem save: reload volta ao arquivo
    Config.reload()
    assert Config.get('cycle.learner_every') == 24

    with open(CONFIG_FILE, encoding='utf-8') as f:
        saved = json.load(f)
    saved['cycle']['learner_every'] = 12
    with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
        json.dump(saved, f)
    try:
        Config.reload()
        assert Config.get('cycle.learner_every') == 12
    finally:
        saved['cycle']['learner_every'] = 24
        with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
            json.dump(saved, f)
        Config.reload()
