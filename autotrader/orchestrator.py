"""
Cycle Orchestrator - loop de decisao.

Um ciclo:
    contador -> learner/diagnostico periodicos -> snapshot dos parametros
    -> saldo -> universo ativo -> analise paralela por instrumento
    -> reconciliacao -> saidas -> limite diario -> selecao de risco
    -> execucao serializada -> last_update

Falha em um instrumento nao aborta o ciclo. Falha ao ler saldo ou ao
reconciliar bloqueia apenas as novas entradas do ciclo.

CycleTicker roda os ciclos em uma thread dedicada com run-lock: um tick que
chega com o ciclo anterior ainda em execucao e ignorado (nunca enfileirado).
"""
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .error_handling import DataUnavailable, ExchangeCallFailed, get_health_status
from .indicators import build_snapshot
from .models import Candle, Position, Signal, last_candle
from .prediction import safe_predict
from .positions import ReconciliationReport
from .sentiment import safe_sentiment
from .utils import utc_now, parse_timestamp
from .volume import analyze_volume

log = logging.getLogger(__name__)

DEFAULT_CYCLE = {
    'interval_seconds': 300,
    'candle_interval': '5m',
    'candle_count': 200,
    'max_workers': 8,
    'diagnostic_every': 12,
    'learner_every': 24,
    'recent_signals': 50,
    'recent_trades': 50,
}


@dataclass
class CycleReport:
    """Resumo de um ciclo."""
    cycle: int
    started_at: str
    finished_at: str = ''
    balance: float = 0.0
    universe: List[str] = field(default_factory=list)
    signals: List[Signal] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    reconciliation: Optional[ReconciliationReport] = None
    exits: List[Position] = field(default_factory=list)
    opened: List[Position] = field(default_factory=list)
    rejected: List[Tuple[Signal, str]] = field(default_factory=list)
    skipped: List[Signal] = field(default_factory=list)
    entries_blocked: str = ''
    learner: Any = None
    diagnostics: Optional[Dict[str, Any]] = None

    @property
    def actionable(self) -> List[Signal]:
        return [s for s in self.signals if s.actionable]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cycle': self.cycle,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'balance': self.balance,
            'universe': list(self.universe),
            'signals': [s.to_dict() for s in self.signals],
            'failed': dict(self.failed),
            'reconciliation': self.reconciliation.to_dict() if self.reconciliation else None,
            'exits': [f"{p.instrument}:{p.side}:{p.exit_reason}" for p in self.exits],
            'opened': [f"{p.instrument}:{p.side}" for p in self.opened],
            'rejected': [{'instrument': s.instrument, 'reason': r} for s, r in self.rejected],
            'skipped': [s.instrument for s in self.skipped],
            'entries_blocked': self.entries_blocked,
            'learner': self.learner.to_dict() if self.learner is not None else None,
            'diagnostics': self.diagnostics['status'] if self.diagnostics else None,
        }


class CycleOrchestrator:
    """Conecta scorer, risco, supervisor, learner e diagnostico."""

    def __init__(self, exchange, supervisor, parameters, scorer, risk, symbols: List[str],
                 learner=None, diagnostics=None, sentiment=None, predictor=None,
                 settings: Optional[Dict[str, Any]] = None,
                 indicator_settings: Optional[Dict[str, Any]] = None,
                 critical_threshold: int = 3):
        self.exchange = exchange
        self.supervisor = supervisor
        self.parameters = parameters
        self.scorer = scorer
        self.risk = risk
        self.symbols = list(symbols)
        self.learner = learner
        self.diagnostics = diagnostics
        self.sentiment = sentiment
        self.predictor = predictor
        self.settings = dict(DEFAULT_CYCLE)
        self.settings.update(settings or {})
        self.indicator_settings = indicator_settings or {}
        self.critical_threshold = critical_threshold

        self._status_lock = threading.Lock()
        self.cycle_count = 0
        self.balance = 0.0
        self.last_update: Optional[str] = None
        self.last_report: Optional[CycleReport] = None
        self.is_running = False
        self._recent_signals = deque(maxlen=self.settings['recent_signals'])

    # =========================================================================
    # ANALISE POR INSTRUMENTO
    # =========================================================================

    def analyze_instrument(self, instrument: str, params, timestamp: str) -> Tuple[Signal, Candle]:
        """
        Buscar candles e preco, calcular indicadores e pontuar.

        Raises:
            ExchangeCallFailed: leitura falhou (instrumento pulado no ciclo)
            DataUnavailable: exchange sem candles
        """
        df = self.exchange.get_candles(instrument, self.settings['candle_interval'],
                                       self.settings['candle_count'])
        candle = last_candle(df)
        if candle is None:
            raise DataUnavailable(f"{instrument}: sem candles")

        snapshot = build_snapshot(df, self.indicator_settings)
        price = self.exchange.get_price(instrument)
        if price > 0:
            snapshot = replace(snapshot, price=price)

        sentiment = safe_sentiment(self.sentiment, instrument, df)
        volume = analyze_volume(df)
        prediction = safe_predict(self.predictor, df)
        signal = self.scorer.score(instrument, snapshot, sentiment, volume, prediction,
                                   params, timestamp)
        return signal, candle

    def _analyze_all(self, instruments: List[str], params, timestamp: str,
                     report: CycleReport) -> Dict[str, Tuple[Signal, Candle]]:
        results = {}
        if not instruments:
            return results
        max_workers = max(1, min(len(instruments), self.settings['max_workers']))

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self.analyze_instrument, instrument, params, timestamp): instrument
                for instrument in instruments
            }
            for future in as_completed(futures):
                instrument = futures[future]
                try:
                    results[instrument] = future.result()
                except ExchangeCallFailed as e:
                    log.warning(f"{instrument}: leitura falhou, pulando no ciclo ({e})")
                    report.failed[instrument] = str(e)
                except DataUnavailable as e:
                    log.warning(f"{instrument}: dados indisponiveis ({e})")
                    report.failed[instrument] = str(e)
                except Exception as e:
                    log.error(f"Erro processando {instrument}: {e}", exc_info=True)
                    report.failed[instrument] = str(e)
        return results

    # =========================================================================
    # CICLO
    # =========================================================================

    def _periodic(self, now: datetime, report: CycleReport):
        cfg = self.settings
        if self.learner is not None and self.cycle_count % cfg['learner_every'] == 0:
            try:
                report.learner = self.learner.run(now)
            except Exception as e:
                log.error(f"[Learner] Falha no aprendizado: {e}", exc_info=True)

        if self.diagnostics is not None and self.cycle_count % cfg['diagnostic_every'] == 0:
            try:
                report.diagnostics = self.diagnostics.run()
            except Exception as e:
                log.error(f"[Diagnostics] Falha no diagnostico: {e}", exc_info=True)

    def _fetch_balance(self, report: CycleReport) -> Optional[float]:
        try:
            balance = self.exchange.get_balance()
        except ExchangeCallFailed as e:
            log.warning(f"Falha ao ler saldo: {e} - entradas bloqueadas neste ciclo")
            report.entries_blocked = 'balance_unavailable'
            return None
        if balance <= 0:
            log.warning("Balance zerado - mantendo estado anterior, sem novas entradas")
            report.entries_blocked = 'zero_balance'
            return None
        return balance

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """Executar um ciclo completo. Nunca levanta por falha de um sub-passo."""
        now = parse_timestamp(now) or utc_now()
        stamp = now.isoformat()
        self.cycle_count += 1
        report = CycleReport(cycle=self.cycle_count, started_at=stamp)
        log.info(f"===== Ciclo #{self.cycle_count} =====")

        self._periodic(now, report)
        params = self.parameters.snapshot()

        balance = self._fetch_balance(report)
        if balance is not None:
            with self._status_lock:
                self.balance = balance
        report.balance = self.balance

        report.universe = params.active_universe(self.symbols)
        # Instrumentos fora do universo com posicao aberta ainda precisam de saida
        monitored = list(report.universe)
        for position in self.supervisor.open_positions():
            if position.instrument not in monitored:
                monitored.append(position.instrument)

        analyses = self._analyze_all(monitored, params, stamp, report)
        universe = set(report.universe)
        report.signals = [analyses[s][0] for s in report.universe if s in analyses]
        with self._status_lock:
            self._recent_signals.extend(report.signals)

        try:
            report.reconciliation = self.supervisor.reconcile_with_exchange(params, now)
        except ExchangeCallFailed as e:
            log.warning(f"[Reconcile] Falha ao consultar exchange: {e} - entradas bloqueadas")
            report.entries_blocked = report.entries_blocked or 'reconciliation_failed'

        for instrument, (_, candle) in analyses.items():
            try:
                report.exits.extend(self.supervisor.evaluate(instrument, candle, now))
            except Exception as e:
                log.error(f"Erro avaliando saidas de {instrument}: {e}", exc_info=True)

        if report.entries_blocked:
            log.info(f"Sem novas entradas neste ciclo ({report.entries_blocked})")
        else:
            self._enter(report, params, now, universe)

        with self._status_lock:
            self.last_update = utc_now().isoformat()
            self.last_report = report
        report.finished_at = self.last_update

        log.info(
            f"Ciclo #{self.cycle_count}: sinais={len(report.signals)} "
            f"acionaveis={len(report.actionable)} abertas={len(report.opened)} "
            f"saidas={len(report.exits)} falhas={len(report.failed)} "
            f"puladas={len(report.skipped)}"
        )
        return report

    def _enter(self, report: CycleReport, params, now: datetime, universe: set):
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        opened_today = self.supervisor.trades_opened_since(day_start)
        remaining = params.max_trades_per_day - opened_today
        candidates = [s for s in report.signals if s.instrument in universe]

        if remaining <= 0:
            report.skipped = [s for s in candidates if s.actionable]
            log.info(f"Limite diario atingido ({opened_today}/{params.max_trades_per_day}), "
                     f"{len(report.skipped)} sinal(is) pulado(s)")
            return

        selection = self.risk.select(candidates, self.balance, self.supervisor.open_positions(), params)
        report.rejected = list(selection.rejected)
        for signal, reason in selection.rejected:
            log.info(f"[Risk] {signal.instrument} rejeitado: {reason} (conf={signal.confidence:.0f}%)")

        for allocation in selection.accepted:
            if len(report.opened) >= remaining:
                report.skipped.append(allocation.signal)
                continue
            position = self.supervisor.open_position(allocation, params, now)
            if position is not None:
                report.opened.append(position)

        if report.skipped:
            log.info(f"Limite diario ({params.max_trades_per_day}) atingido durante a execucao: "
                     f"{len(report.skipped)} sinal(is) pulado(s)")

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """Snapshot somente leitura para operadores."""
        with self._status_lock:
            balance = self.balance
            signals = [s.to_dict() for s in reversed(self._recent_signals)]
            last_update = self.last_update
            is_running = self.is_running
            cycle_count = self.cycle_count

        health = get_health_status(self.critical_threshold)
        if self.diagnostics is not None and self.diagnostics.last_result:
            health['diagnostics'] = self.diagnostics.last_result['status']

        return {
            'balance': balance,
            'open_positions': [p.to_dict() for p in self.supervisor.open_positions()],
            'recent_signals': signals,
            'recent_trades': [p.to_dict() for p in
                              self.supervisor.closed_positions(self.settings['recent_trades'])],
            'parameters': self.parameters.snapshot().to_dict(),
            'is_running': is_running,
            'last_update': last_update,
            'health': health,
            'cycle_count': cycle_count,
        }


class CycleTicker:
    """
    Agenda ciclos em intervalo fixo.

    Cada tick roda em uma thread propria; se o ciclo anterior ainda esta
    rodando o tick e ignorado e logado.
    """

    def __init__(self, orchestrator: CycleOrchestrator, interval: float = 300):
        self.orchestrator = orchestrator
        self.interval = interval
        self.skipped_ticks = 0
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    def tick(self, now: Optional[datetime] = None) -> Optional[CycleReport]:
        """Rodar um ciclo se nenhum estiver em andamento."""
        if not self._run_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            log.warning(f"Tick ignorado: ciclo anterior ainda em execucao (total={self.skipped_ticks})")
            return None
        try:
            return self.orchestrator.run_cycle(now)
        except Exception as e:
            log.error(f"Erro no ciclo: {e}", exc_info=True)
            return None
        finally:
            self._run_lock.release()

    def _dispatch(self):
        self._worker = threading.Thread(target=self.tick, name='cycle-worker', daemon=True)
        self._worker.start()

    def _loop(self):
        log.info(f"Ticker iniciado (intervalo={self.interval}s)")
        self._dispatch()
        while not self._stop.wait(self.interval):
            if self.busy:
                self.skipped_ticks += 1
                log.warning(f"Tick ignorado: ciclo anterior ainda em execucao (total={self.skipped_ticks})")
                continue
            self._dispatch()
        log.info("Ticker parado")

    def start(self):
        if self.is_running:
            return
        self._stop.clear()
        self.orchestrator.is_running = True
        self._thread = threading.Thread(target=self._loop, name='cycle-ticker', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Parar o ticker e aguardar o ciclo em andamento."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        if self._worker is not None:
            self._worker.join(timeout)
        self.orchestrator.is_running = False
