"""
Error Handling Module - Tratamento de erros do loop de decisao
================================================================================
Taxonomia de erros, classificacao de excecoes ccxt, backoff e circuit breakers.

COMPONENTES:
- Excecoes de dominio: DataUnavailable, ExchangeCallFailed, InsufficientBudget,
  PersistenceFailure, ParameterConflict, InvalidTransition
- RetryConfig / calculate_delay: backoff exponencial com jitter
- CircuitBreaker: previne falhas em cascata contra a exchange
- get_health_status: resumo healthy/degraded/critical

Nada aqui termina o processo: condicoes irrecuperaveis viram status de saude.
================================================================================
"""
import ccxt
import random
import logging
from typing import Type, Optional, Dict, Any, Tuple
from datetime import datetime
from dataclasses import dataclass, field
from threading import Lock
from enum import Enum

log = logging.getLogger(__name__)


# =============================================================================
# EXCECOES
# =============================================================================

class TradingBotError(Exception):
    """Excecao base para erros do trading bot."""
    pass


class RetryableError(TradingBotError):
    """Erro que pode ser retentado (rede, timeout, rate limit)."""
    pass


class NonRetryableError(TradingBotError):
    """Erro que NAO deve ser retentado (ordem invalida, saldo insuficiente)."""
    pass


class CriticalError(TradingBotError):
    """Erro critico que requer atencao imediata (falha de autenticacao)."""
    pass


class DataUnavailable(RetryableError):
    """Historico insuficiente ou preco ausente. Degrada para HOLD neutro."""
    pass


class ExchangeCallFailed(TradingBotError):
    """
    Chamada a exchange falhou (rede, timeout, 4xx/5xx).

    Leituras: o instrumento e ignorado neste ciclo.
    Escritas: resultado DESCONHECIDO (unknown_outcome=True) - resolvido
    pela reconciliacao do proximo ciclo, nunca assumido.
    """

    def __init__(self, operation: str, message: str = '', unknown_outcome: bool = False,
                 critical: bool = False, cause: Optional[Exception] = None):
        self.operation = operation
        self.unknown_outcome = unknown_outcome
        self.critical = critical
        self.cause = cause
        super().__init__(f"{operation}: {message}" if message else operation)


class InsufficientBudget(NonRetryableError):
    """Minimo da exchange nao cabe no teto de capital por trade."""

    def __init__(self, instrument: str, required_pct: float, ceiling_pct: float):
        self.instrument = instrument
        self.required_pct = required_pct
        self.ceiling_pct = ceiling_pct
        super().__init__(
            f"{instrument}: minimo exige {required_pct:.1f}% do capital (teto {ceiling_pct:.0f}%)"
        )


class PersistenceFailure(TradingBotError):
    """Falha ao gravar no store. Estado em memoria continua valido."""
    pass


class ParameterConflict(TradingBotError):
    """Parametro fora da faixa valida apos mutacao do learner."""

    def __init__(self, name: str, value: Any, low: Any, high: Any):
        self.name = name
        self.value = value
        self.low = low
        self.high = high
        super().__init__(f"{name}={value} fora de [{low}, {high}]")


class InvalidTransition(TradingBotError):
    """Transicao de estado de posicao proibida."""
    pass


# =============================================================================
# CLASSIFICACAO DE EXCECOES CCXT
# =============================================================================

RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ccxt.NetworkError,
    ccxt.ExchangeNotAvailable,
    ccxt.RateLimitExceeded,
    ccxt.RequestTimeout,
    ccxt.DDoSProtection,
)

NON_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ccxt.InvalidOrder,
    ccxt.InsufficientFunds,
    ccxt.OrderNotFound,
    ccxt.BadSymbol,
)

CRITICAL_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ccxt.AuthenticationError,
    ccxt.PermissionDenied,
    ccxt.AccountSuspended,
)


# =============================================================================
# CONFIGURACAO DE RETRY
# =============================================================================

@dataclass
class RetryConfig:
    """Configuracao para comportamento de retry."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_dict(cls, config: Dict) -> 'RetryConfig':
        """Criar RetryConfig a partir de dicionario."""
        return cls(
            max_attempts=config.get('max_attempts', 3),
            base_delay=config.get('base_delay', 0.5),
            max_delay=config.get('max_delay', 10.0),
            exponential_base=config.get('exponential_base', 2.0),
            jitter=config.get('jitter', True)
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calcular delay com exponential backoff e jitter opcional.

    Args:
        attempt: Numero da tentativa (0-indexed)
        config: Configuracao de retry

    Returns:
        Delay em segundos
    """
    delay = min(
        config.base_delay * (config.exponential_base ** attempt),
        config.max_delay
    )
    if config.jitter:
        delay *= (0.5 + random.random())
    return delay


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitBreakerState(Enum):
    """Estados do circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Padrao Circuit Breaker.

    CLOSED -> OPEN (apos failure_threshold falhas)
    OPEN -> HALF_OPEN (apos recovery_timeout)
    HALF_OPEN -> CLOSED (em sucesso) ou OPEN (em falha)
    """
    name: str
    failure_threshold: int = 5
    recovery_timeout: int = 60  # segundos
    half_open_max_calls: int = 3

    _state: CircuitBreakerState = field(default=CircuitBreakerState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    def can_execute(self) -> bool:
        """True se pode executar, False se o breaker esta aberto."""
        with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return True

            elif self._state == CircuitBreakerState.OPEN:
                if self._last_failure_time:
                    elapsed = (datetime.now() - self._last_failure_time).total_seconds()
                    if elapsed >= self.recovery_timeout:
                        self._state = CircuitBreakerState.HALF_OPEN
                        self._half_open_calls = 0
                        log.info(f"CircuitBreaker [{self.name}]: OPEN -> HALF_OPEN (apos {elapsed:.0f}s)")
                        return True
                return False

            else:  # HALF_OPEN
                if self._half_open_calls < self.half_open_max_calls:
                    self._half_open_calls += 1
                    return True
                return False

    def record_success(self) -> None:
        """Registrar chamada bem-sucedida."""
        with self._lock:
            self._success_count += 1

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._state = CircuitBreakerState.CLOSED
                self._failure_count = 0
                log.info(f"CircuitBreaker [{self.name}]: HALF_OPEN -> CLOSED (recuperado)")

            elif self._state == CircuitBreakerState.CLOSED:
                self._failure_count = 0

    def record_failure(self) -> None:
        """Registrar chamada com falha."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now()

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._state = CircuitBreakerState.OPEN
                log.warning(f"CircuitBreaker [{self.name}]: HALF_OPEN -> OPEN (falha durante recuperacao)")

            elif self._state == CircuitBreakerState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitBreakerState.OPEN
                    log.warning(
                        f"CircuitBreaker [{self.name}]: CLOSED -> OPEN "
                        f"(falhas={self._failure_count}/{self.failure_threshold})"
                    )

    def reset(self) -> None:
        """Resetar circuit breaker para estado inicial."""
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._half_open_calls = 0

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN

    @property
    def stats(self) -> Dict[str, Any]:
        """Retorna estatisticas do circuit breaker."""
        with self._lock:
            return {
                'name': self.name,
                'state': self._state.value,
                'failure_count': self._failure_count,
                'success_count': self._success_count,
                'failure_threshold': self.failure_threshold,
                'recovery_timeout': self.recovery_timeout,
                'last_failure': self._last_failure_time.isoformat() if self._last_failure_time else None
            }


# =============================================================================
# REGISTRO DE CIRCUIT BREAKERS
# =============================================================================

_circuit_breakers: Dict[str, CircuitBreaker] = {}
_cb_lock = Lock()

# Falhas criticas (autenticacao) reportadas pela camada de exchange
_critical_events: Dict[str, Any] = {'count': 0, 'last': None, 'message': ''}
_critical_lock = Lock()


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: int = 60,
    half_open_max_calls: int = 3
) -> CircuitBreaker:
    """Obter ou criar um circuit breaker nomeado (singleton)."""
    with _cb_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(
                name=name,
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                half_open_max_calls=half_open_max_calls
            )
            log.debug(f"CircuitBreaker [{name}] criado")
        return _circuit_breakers[name]


def get_all_circuit_breakers() -> Dict[str, CircuitBreaker]:
    """Retorna todos os circuit breakers registrados."""
    with _cb_lock:
        return dict(_circuit_breakers)


def reset_all_circuit_breakers() -> None:
    """Reseta todos os circuit breakers e o contador de falhas criticas."""
    with _cb_lock:
        for cb in _circuit_breakers.values():
            cb.reset()
    clear_critical_failures()


def record_critical_failure(message: str) -> int:
    """Registrar falha critica (ex: autenticacao). Retorna total acumulado."""
    with _critical_lock:
        _critical_events['count'] += 1
        _critical_events['last'] = datetime.now().isoformat()
        _critical_events['message'] = message
        return _critical_events['count']


def clear_critical_failures() -> None:
    with _critical_lock:
        _critical_events['count'] = 0
        _critical_events['last'] = None
        _critical_events['message'] = ''


def classify_exception(error: Exception) -> str:
    """'retryable', 'non_retryable', 'critical' ou 'unknown'."""
    if isinstance(error, CRITICAL_EXCEPTIONS):
        return 'critical'
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return 'retryable'
    if isinstance(error, NON_RETRYABLE_EXCEPTIONS):
        return 'non_retryable'
    return 'unknown'


# =============================================================================
# HEALTH STATUS
# =============================================================================

def get_health_status(critical_threshold: int = 3) -> Dict[str, Any]:
    """
    Status de saude da camada de error handling.

    'critical' quando falhas de autenticacao persistem (>= critical_threshold),
    'degraded' quando algum breaker nao esta fechado, senao 'healthy'.
    """
    breakers = get_all_circuit_breakers()
    all_closed = all(cb.state == 'closed' for cb in breakers.values())

    with _critical_lock:
        critical = dict(_critical_events)

    if critical['count'] >= critical_threshold:
        status = 'critical'
    elif not all_closed or critical['count'] > 0:
        status = 'degraded'
    else:
        status = 'healthy'

    return {
        'status': status,
        'timestamp': datetime.now().isoformat(),
        'circuit_breakers': {
            name: cb.stats
            for name, cb in breakers.items()
        },
        'total_breakers': len(breakers),
        'open_breakers': sum(1 for cb in breakers.values() if cb.is_open),
        'critical_failures': critical,
    }


__all__ = [
    'TradingBotError',
    'RetryableError',
    'NonRetryableError',
    'CriticalError',
    'DataUnavailable',
    'ExchangeCallFailed',
    'InsufficientBudget',
    'PersistenceFailure',
    'ParameterConflict',
    'InvalidTransition',

    'RETRYABLE_EXCEPTIONS',
    'NON_RETRYABLE_EXCEPTIONS',
    'CRITICAL_EXCEPTIONS',
    'classify_exception',

    'RetryConfig',
    'calculate_delay',

    'CircuitBreaker',
    'CircuitBreakerState',
    'get_circuit_breaker',
    'get_all_circuit_breakers',
    'reset_all_circuit_breakers',
    'record_critical_failure',
    'clear_critical_failures',

    'get_health_status',
]
