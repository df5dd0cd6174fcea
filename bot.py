"""
Bot Principal - Loop de Decisao Adaptativo

Uso:
    python bot.py           # ticker continuo (Ctrl+C para parar)
    python bot.py --once    # um unico ciclo
"""
import sys
import os
import time
import json
import logging
import atexit
import argparse

# =============================================================================
# MUTEX - Evitar multiplas instancias do bot
# =============================================================================
from autotrader.config import (
    Config, USE_TESTNET, get_symbols, get_parameter_defaults, get_parameter_bounds,
    get_auth_recovery_config,
)

LOCK_FILE = Config.get('state.lock_file', 'state/bot.lock')


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def acquire_lock() -> bool:
    """
    Tentar adquirir lock exclusivo para evitar multiplas instancias.
    Returns True se conseguiu o lock, False se ja existe outra instancia.
    """
    lock_dir = os.path.dirname(LOCK_FILE)
    if lock_dir:
        os.makedirs(lock_dir, exist_ok=True)

    if os.path.exists(LOCK_FILE):
        try:
            with open(LOCK_FILE, 'r') as f:
                old_pid = int(f.read().strip())
            if old_pid != os.getpid() and _pid_alive(old_pid):
                return False
        except (OSError, ValueError):
            # Lock corrompido: processo antigo assumido morto
            pass

    try:
        with open(LOCK_FILE, 'w') as f:
            f.write(str(os.getpid()))
        return True
    except OSError as e:
        print(f"Erro ao criar lock file: {e}")
        return False


def release_lock():
    """Liberar lock ao sair."""
    try:
        if os.path.exists(LOCK_FILE):
            with open(LOCK_FILE, 'r') as f:
                stored_pid = int(f.read().strip())
            if stored_pid == os.getpid():
                os.remove(LOCK_FILE)
    except (OSError, ValueError):
        # Shutdown: log pode nao estar mais disponivel
        pass


atexit.register(release_lock)

from autotrader.error_handling import CRITICAL_EXCEPTIONS
from autotrader.exchange import ExchangeClient
from autotrader.learner import AdaptiveLearner, ParameterStore
from autotrader.models import ParameterSet
from autotrader.monitoring import AlertNotifier, SystemDiagnostics, UsageMonitor
from autotrader.orchestrator import CycleOrchestrator, CycleTicker
from autotrader.positions import PositionSupervisor
from autotrader.prediction import HeuristicPredictor
from autotrader.risk import RiskManager
from autotrader.scoring import SignalScorer
from autotrader.sentiment import PriceActionSentiment
from autotrader.store import TradeStore
from autotrader.utils import setup_rotating_logger

# Logging com rotacao automatica (5MB por arquivo, 5 backups) no root logger
log_file = Config.get('state.log_file', 'logs/bot.log')
root_log = setup_rotating_logger(
    name='',
    log_file=log_file,
    max_bytes=5 * 1024 * 1024,  # 5MB
    backup_count=5,
    level=logging.INFO
)

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(logging.Formatter('%(asctime)s | %(levelname)s | %(message)s'))
root_log.addHandler(console_handler)

log = logging.getLogger('trading_bot')


def build_orchestrator() -> CycleOrchestrator:
    """Montar os componentes a partir do config."""
    state = Config.get_section('state')
    monitoring = Config.get_section('monitoring')

    notifier = AlertNotifier(max_history=monitoring.get('max_alert_history', 200))
    store = TradeStore(state.get('trades_file', 'state/trades.json'))
    bounds = get_parameter_bounds()
    parameters = ParameterStore(ParameterSet.from_dict(get_parameter_defaults()),
                                path=state.get('parameters_file'), bounds=bounds)
    parameters.load()

    exchange = ExchangeClient()
    positions_cfg = Config.get_section('positions')
    supervisor = PositionSupervisor(
        exchange, store, notifier,
        trailing_activation_pct=positions_cfg.get('trailing_activation_pct', 10),
        fill_history_limit=positions_cfg.get('fill_history_limit', 100),
    )
    supervisor.rehydrate(parameters.snapshot())

    learner = AdaptiveLearner(store, parameters, bounds=bounds,
                              settings=Config.get_section('learner'), notifier=notifier)
    critical_threshold = get_auth_recovery_config().get('max_failures', 3)
    usage = UsageMonitor(notifier, limits=monitoring.get('credit_limits'))
    diagnostics = SystemDiagnostics(
        store=store, exchange=exchange, notifier=notifier,
        memory_warning_mb=monitoring.get('memory_warning_mb', 500),
        exchange_failure_alert=monitoring.get('exchange_failure_alert', 5),
        critical_threshold=critical_threshold,
        usage=usage,
    )

    return CycleOrchestrator(
        exchange=exchange,
        supervisor=supervisor,
        parameters=parameters,
        scorer=SignalScorer(Config.get_section('scoring')),
        risk=RiskManager.from_config(Config.get_section('risk')),
        symbols=get_symbols(),
        learner=learner,
        diagnostics=diagnostics,
        sentiment=PriceActionSentiment(),
        predictor=HeuristicPredictor(),
        settings=Config.get_section('cycle'),
        indicator_settings=Config.get_section('indicators'),
        critical_threshold=critical_threshold,
    )


def main():
    parser = argparse.ArgumentParser(description='Loop de decisao de trading')
    parser.add_argument('--once', action='store_true', help='Executar um unico ciclo e sair')
    args = parser.parse_args()

    if not acquire_lock():
        print("=" * 60)
        print("  ERRO: Ja existe uma instancia do bot rodando!")
        print("  Se isso estiver incorreto, delete o arquivo:")
        print(f"  {os.path.abspath(LOCK_FILE)}")
        print("=" * 60)
        sys.exit(1)

    mode = "TESTNET" if USE_TESTNET else "PRODUCTION"
    interval = Config.get('cycle.interval_seconds', 300)

    print("=" * 60)
    print("  BOT DE TRADING INICIADO")
    print(f"  PID: {os.getpid()} | Mode: {mode}")
    print(f"  Symbols: {len(get_symbols())} | Intervalo: {interval}s")
    print("=" * 60)

    try:
        orchestrator = build_orchestrator()
    except CRITICAL_EXCEPTIONS as e:
        log.critical(f"Falha de autenticacao ao iniciar: {e}")
        sys.exit(1)

    if args.once:
        report = orchestrator.run_cycle()
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return

    ticker = CycleTicker(orchestrator, interval)
    ticker.start()
    log.info("Iniciando loop de trading...")
    try:
        while ticker.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        log.info("Bot parado pelo usuario")
    finally:
        ticker.stop(timeout=interval)
        log.info("Bot finalizado")


if __name__ == '__main__':
    main()
