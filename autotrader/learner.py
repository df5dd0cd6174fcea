"""
Adaptive Parameter Learner - aprendizado a partir dos trades fechados.

O ParameterSet e imutavel; o learner monta um conjunto novo com
dataclasses.replace, ajusta aos limites validos e troca atomicamente no
ParameterStore. Leitores veem o conjunto anterior ou o novo, nunca um misto.

Regras (independentes, podem disparar juntas):
    - win rate < 45%                 -> confidence_threshold +5
    - trades na janela > 50          -> max_trades_per_day = min(atual, 30)
    - instrumento >= 3 trades, WR < 30%          -> desabilitar
    - instrumento >= 3 trades, WR > 65%, PnL > 0 -> priorizar
    - PnL agregado negativo          -> apenas aviso (nao pausa o trading)
"""
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .error_handling import ParameterConflict
from .models import ParameterSet
from .monitoring import AlertLevel
from .utils import save_json_atomic, load_json_safe, utc_now, parse_timestamp

log = logging.getLogger(__name__)

DEFAULT_LEARNER = {
    'window_hours': 24,
    'win_rate_floor': 45,
    'threshold_step': 5,
    'trade_count_ceiling': 50,
    'reduced_max_trades': 30,
    'instrument_min_trades': 3,
    'instrument_disable_win_rate': 30,
    'instrument_prioritize_win_rate': 65,
}


# =============================================================================
# PARAMETER STORE
# =============================================================================

class ParameterStore:
    """
    Guarda o ParameterSet atual. snapshot(), swap() e update() sob lock.

    Com bounds, parametros carregados do disco sao ajustados aos limites
    (ParameterConflict logado) antes de entrar em uso.
    """

    def __init__(self, initial: Optional[ParameterSet] = None, path: Optional[str] = None,
                 bounds: Optional[Dict[str, List[float]]] = None):
        self._current = initial or ParameterSet()
        self._lock = threading.Lock()
        self.path = path
        self.bounds = bounds or {}

    def snapshot(self) -> ParameterSet:
        with self._lock:
            return self._current

    def swap(self, new: ParameterSet) -> ParameterSet:
        """Troca atomica. Retorna o conjunto anterior."""
        previous, _ = self.update(lambda current: new)
        return previous

    def update(self, fn: Callable[[ParameterSet], ParameterSet]) -> Tuple[ParameterSet, ParameterSet]:
        """
        Ler-modificar-trocar atomico: fn recebe o conjunto atual e devolve o novo.
        fn nao deve chamar snapshot() (lock nao reentrante).

        Returns:
            (anterior, novo). Se fn devolve o mesmo objeto nada e gravado.
        """
        with self._lock:
            previous = self._current
            new = fn(previous)
            self._current = new
        if new is not previous:
            self.save()
        return previous, new

    def save(self):
        if not self.path:
            return
        try:
            save_json_atomic(self.path, self.snapshot().to_dict())
        except (OSError, TypeError, ValueError) as e:
            log.error(f"Falha ao salvar parametros em {self.path}: {e} (mantidos em memoria)")

    def load(self) -> ParameterSet:
        """Carregar parametros salvos (se existirem) sobre o conjunto atual."""
        if not self.path:
            return self.snapshot()
        data = load_json_safe(self.path, default={})
        if not isinstance(data, dict):
            log.warning(f"Formato invalido em {self.path}, mantendo parametros atuais")
            return self.snapshot()
        if data:
            with self._lock:
                merged = self._current.to_dict()
                merged.update(data)
                loaded, conflicts = ParameterSet.from_dict(merged).clamp(self.bounds)
                self._current = loaded
            for conflict in conflicts:
                log.warning(f"ParameterConflict em {self.path}: {conflict} - ajustado ao limite")
            log.info(f"Parametros carregados de {self.path}")
        return self.snapshot()


# =============================================================================
# ANALISE DE PERFORMANCE
# =============================================================================

@dataclass
class InstrumentStats:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades * 100 if self.trades else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trades': self.trades,
            'wins': self.wins,
            'losses': self.losses,
            'total_pnl': round(self.total_pnl, 4),
            'win_rate': round(self.win_rate, 2),
        }


@dataclass
class PerformanceReport:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    per_instrument: Dict[str, InstrumentStats] = field(default_factory=dict)
    best_trade: Optional[Dict[str, Any]] = None
    worst_trade: Optional[Dict[str, Any]] = None

    @property
    def roi(self) -> float:
        return self.total_pnl

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_trades': self.total_trades,
            'wins': self.wins,
            'losses': self.losses,
            'win_rate': round(self.win_rate, 2),
            'total_pnl': round(self.total_pnl, 4),
            'avg_win': round(self.avg_win, 4),
            'avg_loss': round(self.avg_loss, 4),
            'profit_factor': round(self.profit_factor, 4),
            'per_instrument': {s: st.to_dict() for s, st in self.per_instrument.items()},
            'best_trade': self.best_trade.get('id') if self.best_trade else None,
            'worst_trade': self.worst_trade.get('id') if self.worst_trade else None,
        }


def _pnl(trade: Dict[str, Any]) -> float:
    return float(trade.get('pnl') or 0)


def analyze_performance(trades: List[Dict[str, Any]], now: Optional[datetime] = None,
                        window_hours: Optional[float] = 24) -> PerformanceReport:
    """
    Estatisticas dos trades fechados dentro da janela (window_hours=None: todos).
    Trade com pnl <= 0 conta como perda.
    """
    now = parse_timestamp(now) or utc_now()
    closed = [t for t in trades if t.get('status') == 'closed']
    if window_hours is not None:
        start = now - timedelta(hours=window_hours)
        recent = []
        for trade in closed:
            when = parse_timestamp(trade.get('exit_time') or trade.get('entry_time'))
            if when is not None and when > start:
                recent.append(trade)
        closed = recent

    report = PerformanceReport()
    if not closed:
        return report

    winners = [t for t in closed if _pnl(t) > 0]
    losers = [t for t in closed if _pnl(t) <= 0]

    report.total_trades = len(closed)
    report.wins = len(winners)
    report.losses = len(losers)
    report.win_rate = len(winners) / len(closed) * 100
    report.total_pnl = sum(_pnl(t) for t in closed)
    report.avg_win = sum(_pnl(t) for t in winners) / len(winners) if winners else 0.0
    report.avg_loss = abs(sum(_pnl(t) for t in losers) / len(losers)) if losers else 0.0
    report.profit_factor = report.avg_win / report.avg_loss if report.avg_loss > 0 else 0.0
    report.best_trade = max(closed, key=_pnl)
    report.worst_trade = min(closed, key=_pnl)

    for trade in closed:
        stats = report.per_instrument.setdefault(trade.get('symbol', ''), InstrumentStats())
        stats.trades += 1
        if _pnl(trade) > 0:
            stats.wins += 1
        else:
            stats.losses += 1
        stats.total_pnl += _pnl(trade)

    return report


# =============================================================================
# PADROES
# =============================================================================

class PatternAnalyzer:
    """Compara indicadores de entrada de trades vencedores e perdedores."""

    @staticmethod
    def _entry_stats(trades: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not trades:
            return {}
        count = len(trades)

        def avg(key):
            return sum(float(t.get(key) or 0) for t in trades) / count

        trends = Counter(t.get('entry_trend') for t in trades if t.get('entry_trend'))
        reasons = Counter(r for t in trades for r in (t.get('entry_reasons') or []))
        return {
            'count': count,
            'avg_rsi': avg('entry_rsi'),
            'avg_macd': avg('entry_macd'),
            'avg_volume_ratio': avg('entry_volume_ratio'),
            'avg_confidence': avg('entry_confidence'),
            'avg_volatility': avg('entry_volatility'),
            'trend_distribution': dict(trends),
            'top_reasons': reasons.most_common(5),
        }

    def analyze(self, trades: List[Dict[str, Any]]) -> Dict[str, Any]:
        closed = [t for t in trades if t.get('status') == 'closed']
        winners = [t for t in closed if _pnl(t) > 0]
        losers = [t for t in closed if _pnl(t) <= 0]
        if not closed:
            return {'status': 'insufficient_data', 'insights': []}

        win = self._entry_stats(winners)
        lose = self._entry_stats(losers)
        insights = []

        if win and lose:
            rsi_diff = abs(win['avg_rsi'] - lose['avg_rsi'])
            if rsi_diff > 10:
                center = max(win['avg_rsi'], lose['avg_rsi'])
                insights.append({
                    'type': 'indicator',
                    'indicator': 'rsi',
                    'message': f"RSI medio {win['avg_rsi']:.1f} em vencedores vs {lose['avg_rsi']:.1f} em perdedores",
                    'suggested_range': [center - 10, center + 10],
                })

            if win['avg_confidence'] - lose['avg_confidence'] > 5:
                insights.append({
                    'type': 'threshold',
                    'parameter': 'confidence_threshold',
                    'message': f"Confianca media {win['avg_confidence']:.1f}% em vencedores "
                               f"vs {lose['avg_confidence']:.1f}% em perdedores",
                    'suggested_value': max(70, win['avg_confidence'] - 5),
                })

            volume_diff = win['avg_volume_ratio'] - lose['avg_volume_ratio']
            if abs(volume_diff) > 0.5:
                insights.append({
                    'type': 'indicator',
                    'indicator': 'volume_ratio',
                    'message': f"Volume ratio {win['avg_volume_ratio']:.2f}x em vencedores "
                               f"vs {lose['avg_volume_ratio']:.2f}x em perdedores",
                    'suggested_minimum': win['avg_volume_ratio'] * 0.8 if volume_diff > 0 else None,
                })

            win_trend = max(win['trend_distribution'].items(), key=lambda kv: kv[1], default=None)
            lose_trend = max(lose['trend_distribution'].items(), key=lambda kv: kv[1], default=None)
            if win_trend and lose_trend and win_trend[0] != lose_trend[0]:
                insights.append({
                    'type': 'strategy',
                    'parameter': 'trend_preference',
                    'message': f"Vencedores predominantemente {win_trend[0]}, perdedores {lose_trend[0]}",
                    'suggested_value': win_trend[0],
                })

        return {
            'status': 'success',
            'total_trades': len(closed),
            'winning': win,
            'losing': lose,
            'insights': insights,
        }


# =============================================================================
# LEARNER
# =============================================================================

@dataclass
class LearningReport:
    timestamp: str
    performance: PerformanceReport
    patterns: Dict[str, Any] = field(default_factory=dict)
    changes: List[Tuple[str, Any, Any]] = field(default_factory=list)
    conflicts: List[ParameterConflict] = field(default_factory=list)
    advisories: List[str] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return bool(self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'performance': self.performance.to_dict(),
            'insights': self.patterns.get('insights', []),
            'changes': [{'parameter': n, 'before': b, 'after': a} for n, b, a in self.changes],
            'conflicts': [str(c) for c in self.conflicts],
            'advisories': list(self.advisories),
        }


def _diff(before: ParameterSet, after: ParameterSet) -> List[Tuple[str, Any, Any]]:
    old, new = before.to_dict(), after.to_dict()
    return [(name, old[name], new[name]) for name in old if old[name] != new[name]]


class AdaptiveLearner:
    """Aplica as regras de aprendizado sobre o historico do store."""

    def __init__(self, store, parameters: ParameterStore,
                 bounds: Optional[Dict[str, List[float]]] = None,
                 settings: Optional[Dict[str, Any]] = None, notifier=None):
        self.store = store
        self.parameters = parameters
        self.bounds = bounds or {}
        self.settings = dict(DEFAULT_LEARNER)
        self.settings.update(settings or {})
        self.notifier = notifier
        self.pattern_analyzer = PatternAnalyzer()
        self.history: List[LearningReport] = []

    def propose(self, current: ParameterSet, performance: PerformanceReport) -> Tuple[ParameterSet, List[str]]:
        """Novo ParameterSet (sem clamp) e avisos."""
        cfg = self.settings
        updates: Dict[str, Any] = {}
        advisories = []

        if performance.total_trades > 0 and performance.win_rate < cfg['win_rate_floor']:
            updates['confidence_threshold'] = current.confidence_threshold + cfg['threshold_step']

        if performance.total_trades > cfg['trade_count_ceiling']:
            reduced = min(current.max_trades_per_day, cfg['reduced_max_trades'])
            if reduced != current.max_trades_per_day:
                updates['max_trades_per_day'] = reduced

        disabled = set(current.disabled_instruments)
        prioritized = list(current.prioritized_instruments)
        for symbol, stats in sorted(performance.per_instrument.items()):
            if stats.trades < cfg['instrument_min_trades']:
                continue
            if stats.win_rate < cfg['instrument_disable_win_rate']:
                disabled.add(symbol)
            elif stats.win_rate > cfg['instrument_prioritize_win_rate'] and stats.total_pnl > 0:
                if symbol not in prioritized:
                    prioritized.append(symbol)

        if disabled != set(current.disabled_instruments):
            updates['disabled_instruments'] = frozenset(disabled)
        if prioritized != list(current.prioritized_instruments):
            updates['prioritized_instruments'] = tuple(prioritized)

        if performance.total_trades > 0 and performance.total_pnl < 0:
            advisories.append(
                f"PnL negativo na janela: ${performance.total_pnl:.2f} - considerar revisar a estrategia"
            )

        return replace(current, **updates), advisories

    def run(self, now: Optional[datetime] = None) -> LearningReport:
        """Rodar um ciclo de aprendizado e trocar os parametros se mudaram."""
        now = parse_timestamp(now) or utc_now()
        window = self.settings['window_hours']
        since = now - timedelta(hours=window)
        trades = self.store.query_trades(status='closed', since=since)

        log.info(f"[Learner] Analisando {len(trades)} trade(s) fechados nas ultimas {window}h")
        performance = analyze_performance(trades, now, window)
        patterns = self.pattern_analyzer.analyze(trades)
        report = LearningReport(timestamp=now.isoformat(), performance=performance, patterns=patterns)

        for insight in patterns.get('insights', []):
            log.info(f"[Learner] Insight ({insight['type']}): {insight['message']}")

        def learn(current: ParameterSet) -> ParameterSet:
            proposed, report.advisories = self.propose(current, performance)
            clamped, report.conflicts = proposed.clamp(self.bounds)
            report.changes = _diff(current, clamped)
            return clamped if report.changes else current

        # Regras aplicadas sobre o conjunto atual sob o lock do store
        self.parameters.update(learn)

        for conflict in report.conflicts:
            log.warning(f"[Learner] ParameterConflict: {conflict} - ajustado ao limite")

        for advisory in report.advisories:
            log.warning(f"[Learner] AVISO: {advisory}")
            if self.notifier:
                self.notifier.notify(AlertLevel.WARNING, 'learner', 'PnL negativo', advisory,
                                     data={'total_pnl': performance.total_pnl})

        if report.changes:
            for name, before, after in report.changes:
                log.info(f"[Learner] {name}: {before} -> {after}")
        else:
            log.info("[Learner] Nenhuma alteracao de parametros")

        log.info(f"[Learner] WR={performance.win_rate:.1f}% trades={performance.total_trades} "
                 f"PnL=${performance.total_pnl:.2f} mudancas={len(report.changes)}")
        self.history.append(report)
        self.history = self.history[-50:]
        return report

    def _set_instrument(self, instrument: str, disabled: bool) -> bool:
        def toggle(current: ParameterSet) -> ParameterSet:
            instruments = set(current.disabled_instruments)
            if (instrument in instruments) == disabled:
                return current
            if disabled:
                instruments.add(instrument)
            else:
                instruments.discard(instrument)
            return replace(current, disabled_instruments=frozenset(instruments))

        before, after = self.parameters.update(toggle)
        if after is before:
            return False
        log.info(f"[Learner] disabled_instruments: {sorted(before.disabled_instruments)} -> "
                 f"{sorted(after.disabled_instruments)}")
        return True

    def enable_instrument(self, instrument: str) -> bool:
        """Reabilitar instrumento (override manual)."""
        return self._set_instrument(instrument, disabled=False)

    def disable_instrument(self, instrument: str) -> bool:
        return self._set_instrument(instrument, disabled=True)
