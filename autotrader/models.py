"""
Modelos de dados do loop de decisao.

Candle, Signal e ParameterSet sao imutaveis (frozen). Position e mutavel,
mas so pelo PositionSupervisor e apenas pelas transicoes permitidas:
opening -> open -> closing -> closed.
"""
import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import pandas as pd

from .error_handling import InvalidTransition, ParameterConflict

OHLCV_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']


@dataclass(frozen=True)
class Candle:
    """Barra OHLCV."""
    timestamp: Any
    open: float
    high: float
    low: float
    close: float
    volume: float


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    """Converter sequencia de Candle para DataFrame OHLCV ordenado."""
    rows = [[c.timestamp, c.open, c.high, c.low, c.close, c.volume] for c in candles]
    df = pd.DataFrame(rows, columns=OHLCV_COLUMNS)
    return df.reset_index(drop=True)


def last_candle(df: pd.DataFrame) -> Optional[Candle]:
    """Ultima barra do DataFrame (ou None se vazio)."""
    if df is None or df.empty:
        return None
    row = df.iloc[-1]
    return Candle(
        timestamp=row['timestamp'] if 'timestamp' in df.columns else None,
        open=float(row['open']),
        high=float(row['high']),
        low=float(row['low']),
        close=float(row['close']),
        volume=float(row['volume']),
    )


# =============================================================================
# SINAIS
# =============================================================================

class SignalDirection(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


@dataclass(frozen=True)
class Signal:
    """Sinal de trading. Criado a cada ciclo, nunca mutado."""
    instrument: str
    timestamp: str
    direction: SignalDirection
    confidence: float
    score: float = 0.0
    bullish_score: float = 0.0
    bearish_score: float = 0.0
    factors: Tuple[Tuple[str, str, float], ...] = ()
    reasons: Tuple[str, ...] = ()
    leverage: int = 0
    price: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def side(self) -> Optional[str]:
        """Lado da ordem ('Buy'/'Sell') ou None para HOLD."""
        if self.direction == SignalDirection.BUY:
            return 'Buy'
        if self.direction == SignalDirection.SELL:
            return 'Sell'
        return None

    @property
    def actionable(self) -> bool:
        return self.direction != SignalDirection.HOLD and self.leverage > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instrument': self.instrument,
            'timestamp': self.timestamp,
            'direction': self.direction.value,
            'confidence': self.confidence,
            'score': self.score,
            'bullish_score': self.bullish_score,
            'bearish_score': self.bearish_score,
            'factors': [list(f) for f in self.factors],
            'reasons': list(self.reasons),
            'leverage': self.leverage,
            'price': self.price,
        }


@dataclass(frozen=True)
class Allocation:
    """Sinal aceito pelo RiskManager com tamanho concreto."""
    signal: Signal
    quantity: float
    leverage: int
    capital_cost: float
    position_pct: float

    @property
    def instrument(self) -> str:
        return self.signal.instrument

    @property
    def side(self) -> str:
        return self.signal.side


# =============================================================================
# POSICOES
# =============================================================================

class PositionStatus(Enum):
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS = {
    PositionStatus.OPENING: {PositionStatus.OPEN},
    PositionStatus.OPEN: {PositionStatus.CLOSING},
    PositionStatus.CLOSING: {PositionStatus.CLOSED},
    PositionStatus.CLOSED: set(),
}

EXIT_REASONS = ('stop_loss', 'take_profit', 'manual', 'reconciled')


@dataclass
class Position:
    """Posicao de um instrumento em um lado (Buy/Sell)."""
    instrument: str
    side: str
    entry_price: float
    quantity: float
    leverage: int
    stop_loss: float
    take_profit: float
    opened_at: str
    status: PositionStatus = PositionStatus.OPENING
    trail_percent: float = 0.0
    confidence: float = 0.0
    score: float = 0.0
    reasons: List[str] = field(default_factory=list)
    entry_snapshot: Dict[str, Any] = field(default_factory=dict)
    order_ref: str = ""
    trade_id: Optional[str] = None
    last_price: float = 0.0
    pending_reason: str = ""
    pending_exit_price: float = 0.0
    exit_price: Optional[float] = None
    closed_at: Optional[str] = None
    exit_reason: Optional[str] = None
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    duration_minutes: Optional[int] = None

    def __post_init__(self):
        if self.last_price == 0.0:
            self.last_price = self.entry_price

    @property
    def key(self) -> Tuple[str, str]:
        return (self.instrument, self.side)

    @property
    def is_long(self) -> bool:
        return self.side == 'Buy'

    @property
    def is_active(self) -> bool:
        """OPEN ou CLOSING: ainda ocupa o par (instrumento, lado)."""
        return self.status in (PositionStatus.OPEN, PositionStatus.CLOSING)

    @property
    def margin(self) -> float:
        return self.quantity * self.entry_price / max(self.leverage, 1)

    def transition(self, new_status: PositionStatus):
        """Aplicar transicao validada. Transicao ilegal levanta InvalidTransition."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"{self.instrument} {self.side}: {self.status.value} -> {new_status.value} nao permitido"
            )
        self.status = new_status

    def price_move_percent(self, price: float) -> float:
        """Movimento de preco a favor da posicao, em %."""
        if self.entry_price <= 0:
            return 0.0
        if self.is_long:
            return (price - self.entry_price) / self.entry_price * 100
        return (self.entry_price - price) / self.entry_price * 100

    def unrealized_pnl_percent(self, price: float) -> float:
        """Retorno sobre margem (movimento de preco x alavancagem)."""
        return self.price_move_percent(price) * max(self.leverage, 1)

    def pnl_at(self, price: float) -> float:
        if self.is_long:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    def to_record(self) -> Dict[str, Any]:
        """Registro para o TradeStore (entrada)."""
        snapshot = self.entry_snapshot or {}
        return {
            'symbol': self.instrument,
            'side': self.side,
            'entry_price': self.entry_price,
            'entry_time': self.opened_at,
            'entry_confidence': self.confidence,
            'entry_score': self.score,
            'entry_reasons': list(self.reasons),
            'entry_rsi': snapshot.get('rsi'),
            'entry_macd': snapshot.get('macd'),
            'entry_macd_signal': snapshot.get('macd_signal'),
            'entry_macd_histogram': snapshot.get('macd_histogram'),
            'entry_bb_upper': snapshot.get('bb_upper'),
            'entry_bb_middle': snapshot.get('bb_middle'),
            'entry_bb_lower': snapshot.get('bb_lower'),
            'entry_volume_ratio': snapshot.get('volume_ratio'),
            'entry_trend': snapshot.get('trend'),
            'entry_volatility': snapshot.get('volatility'),
            'quantity': self.quantity,
            'leverage': self.leverage,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'status': 'open',
        }

    def exit_fields(self) -> Dict[str, Any]:
        return {
            'exit_price': self.exit_price,
            'exit_time': self.closed_at,
            'exit_reason': self.exit_reason,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
            'duration_minutes': self.duration_minutes,
            'status': 'closed',
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], trail_percent: float = 0.0) -> 'Position':
        """Reidratar posicao aberta a partir de um registro do store."""
        entry_snapshot = {
            'rsi': record.get('entry_rsi'),
            'macd': record.get('entry_macd'),
            'volume_ratio': record.get('entry_volume_ratio'),
            'trend': record.get('entry_trend'),
            'volatility': record.get('entry_volatility'),
        }
        return cls(
            instrument=record['symbol'],
            side=record['side'],
            entry_price=float(record['entry_price']),
            quantity=float(record['quantity']),
            leverage=int(record.get('leverage') or 1),
            stop_loss=float(record.get('stop_loss') or 0),
            take_profit=float(record.get('take_profit') or 0),
            opened_at=record['entry_time'],
            status=PositionStatus.OPEN,
            trail_percent=trail_percent,
            confidence=float(record.get('entry_confidence') or 0),
            score=float(record.get('entry_score') or 0),
            reasons=list(record.get('entry_reasons') or []),
            entry_snapshot=entry_snapshot,
            trade_id=record.get('id'),
        )


# =============================================================================
# PARAMETROS APRENDIDOS
# =============================================================================

@dataclass(frozen=True)
class ParameterSet:
    """
    Conjunto de parametros adaptativos. Imutavel: o learner cria um novo
    conjunto e troca atomicamente no ParameterStore.
    """
    confidence_threshold: float = 70
    stop_loss_percent: float = 5
    take_profit_percent: float = 15
    max_trades_per_day: int = 50
    risk_per_trade: float = 20
    disabled_instruments: FrozenSet[str] = frozenset()
    prioritized_instruments: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ParameterSet':
        defaults = cls()
        return cls(
            confidence_threshold=float(data.get('confidence_threshold', defaults.confidence_threshold)),
            stop_loss_percent=float(data.get('stop_loss_percent', defaults.stop_loss_percent)),
            take_profit_percent=float(data.get('take_profit_percent', defaults.take_profit_percent)),
            max_trades_per_day=int(data.get('max_trades_per_day', defaults.max_trades_per_day)),
            risk_per_trade=float(data.get('risk_per_trade', defaults.risk_per_trade)),
            disabled_instruments=frozenset(data.get('disabled_instruments') or ()),
            prioritized_instruments=tuple(data.get('prioritized_instruments') or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'confidence_threshold': self.confidence_threshold,
            'stop_loss_percent': self.stop_loss_percent,
            'take_profit_percent': self.take_profit_percent,
            'max_trades_per_day': self.max_trades_per_day,
            'risk_per_trade': self.risk_per_trade,
            'disabled_instruments': sorted(self.disabled_instruments),
            'prioritized_instruments': list(self.prioritized_instruments),
        }

    def clamp(self, bounds: Dict[str, List[float]]) -> Tuple['ParameterSet', List[ParameterConflict]]:
        """
        Forcar cada parametro numerico para dentro da sua faixa valida.

        Returns:
            (conjunto ajustado, lista de conflitos encontrados)
        """
        values = {}
        conflicts = []
        for name, (low, high) in bounds.items():
            if not hasattr(self, name):
                continue
            value = getattr(self, name)
            if value is None or (isinstance(value, float) and math.isnan(value)):
                conflicts.append(ParameterConflict(name, value, low, high))
                value = low
            elif value < low or value > high:
                conflicts.append(ParameterConflict(name, value, low, high))
                value = min(max(value, low), high)
            values[name] = int(value) if name == 'max_trades_per_day' else value

        if not values:
            return self, conflicts

        data = self.to_dict()
        data.update(values)
        return ParameterSet.from_dict(data), conflicts

    def active_universe(self, symbols: Iterable[str]) -> List[str]:
        """
        Universo ativo: remove desabilitados e coloca priorizados na frente
        (na ordem de prioridade).
        """
        allowed = [s for s in symbols if s not in self.disabled_instruments]
        prioritized = [s for s in dict.fromkeys(self.prioritized_instruments) if s in allowed]
        return prioritized + [s for s in allowed if s not in prioritized]
