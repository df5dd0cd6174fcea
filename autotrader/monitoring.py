"""
Monitoring - alertas, uso de creditos/quota e diagnostico periodico.

Alertas sao despachados para canais plugaveis. O canal padrao e o log;
nao ha envio de email/SMS aqui.
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil

from .error_handling import get_health_status
from .utils import utc_now

log = logging.getLogger(__name__)


class AlertLevel(Enum):
    CRITICAL = "critical"
    LOW = "low"
    WARNING = "warning"


_LOG_METHOD = {
    AlertLevel.CRITICAL: 'critical',
    AlertLevel.LOW: 'warning',
    AlertLevel.WARNING: 'warning',
}


@dataclass
class Alert:
    """Notificacao de alerta."""
    level: AlertLevel
    source: str
    title: str
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level': self.level.value,
            'source': self.source,
            'title': self.title,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'data': self.data,
        }


def log_channel(alert: Alert):
    """Canal padrao: escreve o alerta no log."""
    getattr(log, _LOG_METHOD[alert.level])(f"[ALERT] {alert.title}: {alert.message}")


class AlertNotifier:
    """
    Despacha alertas para canais, com de-duplicacao por (source, level)
    ate clear() e historico limitado.
    """

    def __init__(self, channels: Optional[List[Callable[[Alert], None]]] = None,
                 max_history: int = 200):
        self.channels: List[Callable[[Alert], None]] = list(channels) if channels else [log_channel]
        self._history = deque(maxlen=max_history)
        self._active: set = set()
        self._lock = threading.Lock()

    def notify(self, level: AlertLevel, source: str, title: str, message: str,
               data: Optional[Dict[str, Any]] = None, dedupe: bool = True) -> Optional[Alert]:
        """
        Emitir alerta. Retorna None quando o mesmo (source, level) ja esta ativo.
        """
        key = (source, level)
        with self._lock:
            if dedupe and key in self._active:
                return None
            if dedupe:
                self._active.add(key)
            alert = Alert(level=level, source=source, title=title, message=message, data=data or {})
            self._history.append(alert)

        for channel in self.channels:
            try:
                channel(alert)
            except Exception as e:
                log.error(f"Falha no canal de alerta {getattr(channel, '__name__', channel)}: {e}")
        return alert

    def clear(self, source: str, level: Optional[AlertLevel] = None):
        """Liberar de-duplicacao de uma fonte (condicao normalizou)."""
        with self._lock:
            self._active = {
                (s, lv) for s, lv in self._active
                if not (s == source and (level is None or lv == level))
            }

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            alerts = list(self._history)[-limit:]
        return [a.to_dict() for a in reversed(alerts)]


# =============================================================================
# USO DE CREDITOS / QUOTA
# =============================================================================

DEFAULT_CREDIT_LIMITS = {'critical': 5, 'low': 20, 'warning': 50}


class UsageMonitor:
    """
    Acompanha creditos/quota restantes e alerta uma vez por nivel.
    Recarga acima do limite de aviso libera os alertas.
    """

    SOURCE = 'credits'

    def __init__(self, notifier: AlertNotifier, limits: Optional[Dict[str, float]] = None):
        self.notifier = notifier
        self.limits = dict(DEFAULT_CREDIT_LIMITS)
        self.limits.update(limits or {})
        self.remaining: Optional[float] = None

    def level_for(self, remaining: float) -> Optional[AlertLevel]:
        if remaining <= self.limits['critical']:
            return AlertLevel.CRITICAL
        if remaining <= self.limits['low']:
            return AlertLevel.LOW
        if remaining <= self.limits['warning']:
            return AlertLevel.WARNING
        return None

    def update(self, remaining: float) -> Optional[Alert]:
        """Registrar saldo de creditos. Retorna o alerta emitido (se houver)."""
        self.remaining = remaining
        level = self.level_for(remaining)
        if level is None:
            self.notifier.clear(self.SOURCE)
            return None

        titles = {
            AlertLevel.CRITICAL: 'Creditos CRITICOS',
            AlertLevel.LOW: 'Creditos BAIXOS',
            AlertLevel.WARNING: 'Creditos em AVISO',
        }
        return self.notifier.notify(
            level, self.SOURCE, titles[level],
            f"Creditos restantes: {remaining}",
            data={'remaining': remaining},
        )


# =============================================================================
# DIAGNOSTICO
# =============================================================================

class SystemDiagnostics:
    """
    Diagnostico periodico: exchange (breakers, falhas consecutivas),
    store (escrita) e memoria do processo. Com um UsageMonitor, tambem a
    quota restante reportada pela exchange.
    """

    def __init__(self, store=None, exchange=None, notifier: Optional[AlertNotifier] = None,
                 memory_warning_mb: float = 500, exchange_failure_alert: int = 5,
                 critical_threshold: int = 3, usage: Optional[UsageMonitor] = None):
        self.store = store
        self.exchange = exchange
        self.notifier = notifier
        self.memory_warning_mb = memory_warning_mb
        self.exchange_failure_alert = exchange_failure_alert
        self.critical_threshold = critical_threshold
        self.usage = usage
        self.last_result: Optional[Dict[str, Any]] = None

    def check_exchange(self) -> Tuple[str, str]:
        health = get_health_status(self.critical_threshold)
        failures = getattr(self.exchange, 'consecutive_failures', 0) if self.exchange else 0
        if health['status'] == 'critical':
            return 'error', f"Falhas criticas na exchange: {health['critical_failures']['message']}"
        if failures >= self.exchange_failure_alert:
            return 'error', f"{failures} falhas consecutivas na exchange"
        if health['status'] == 'degraded':
            return 'warning', f"{health['open_breakers']} circuit breaker(s) aberto(s)"
        return 'healthy', 'Exchange respondendo normalmente'

    def check_store(self) -> Tuple[str, str]:
        if self.store is None:
            return 'warning', 'Store nao configurado'
        if not self.store.check_writable():
            return 'error', 'Store sem permissao de escrita'
        return 'healthy', 'Store OK'

    def check_quota(self) -> Tuple[str, str]:
        reader = getattr(self.exchange, 'remaining_quota', None)
        remaining = reader() if reader else None
        if remaining is None:
            return 'healthy', 'Quota nao reportada pela exchange'
        self.usage.update(remaining)
        level = self.usage.level_for(remaining)
        if level == AlertLevel.CRITICAL:
            return 'error', f"Quota da exchange esgotando: {remaining:.0f} restantes"
        if level is not None:
            return 'warning', f"Quota da exchange baixa: {remaining:.0f} restantes"
        return 'healthy', f"Quota: {remaining:.0f} restantes"

    def check_memory(self) -> Tuple[str, str]:
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        if rss_mb > self.memory_warning_mb:
            return 'warning', f"Uso de memoria alto: {rss_mb:.0f}MB"
        return 'healthy', f"Memoria: {rss_mb:.0f}MB"

    def run(self) -> Dict[str, Any]:
        """Diagnostico completo. status: healthy / warning / critical."""
        log.info("[Diagnostics] Iniciando diagnostico completo...")
        results = {
            'timestamp': utc_now().isoformat(),
            'status': 'healthy',
            'issues': [],
            'warnings': [],
            'checks': {},
        }

        checks = [('exchange', self.check_exchange),
                  ('store', self.check_store),
                  ('memory', self.check_memory)]
        if self.usage is not None:
            checks.append(('quota', self.check_quota))

        for name, check in checks:
            try:
                status, message = check()
            except Exception as e:
                status, message = 'error', f"Falha no check {name}: {e}"
            results['checks'][name] = {'status': status, 'message': message}
            if status == 'error':
                results['issues'].append(message)
            elif status == 'warning':
                results['warnings'].append(message)

        if results['issues']:
            results['status'] = 'critical'
        elif results['warnings']:
            results['status'] = 'warning'

        if self.notifier:
            if results['status'] == 'critical':
                self.notifier.notify(AlertLevel.CRITICAL, 'diagnostics', 'Diagnostico critico',
                                     '; '.join(results['issues']), data=results['checks'])
            elif results['status'] == 'warning':
                self.notifier.notify(AlertLevel.WARNING, 'diagnostics', 'Diagnostico com avisos',
                                     '; '.join(results['warnings']), data=results['checks'])
            else:
                self.notifier.clear('diagnostics')

        log.info(f"[Diagnostics] Concluido: {results['status']} "
                 f"(issues={len(results['issues'])}, warnings={len(results['warnings'])})")
        self.last_result = results
        return results
