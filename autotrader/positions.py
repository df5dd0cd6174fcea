"""
Position Supervisor - ciclo de vida das posicoes.

Unico escritor do estado de posicoes (RLock). Estados:
    opening -> open -> closing -> closed

A exchange e a fonte da verdade: reconcile() roda todo ciclo antes de novas
entradas e fecha localmente o que a exchange ja fechou (liquidacao, manual).
Falha de escrita no store nao altera o estado em memoria.
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .error_handling import ExchangeCallFailed, PersistenceFailure
from .models import Allocation, Candle, ParameterSet, Position, PositionStatus
from .monitoring import AlertLevel
from .scoring import stop_and_target
from .utils import utc_now, parse_timestamp

log = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    closed: List[Position] = field(default_factory=list)
    adopted: List[Position] = field(default_factory=list)
    pending: List[Position] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.closed or self.adopted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'closed': [f"{p.instrument}:{p.side}" for p in self.closed],
            'adopted': [f"{p.instrument}:{p.side}" for p in self.adopted],
            'pending': [f"{p.instrument}:{p.side}" for p in self.pending],
        }


def _trail_percent(params: ParameterSet, leverage: int) -> float:
    # Mesma distancia de preco do stop inicial
    return params.stop_loss_percent / max(int(leverage), 1)


class PositionSupervisor:
    """Book de posicoes por (instrumento, lado)."""

    def __init__(self, exchange, store, notifier=None, trailing_activation_pct: float = 10,
                 fill_history_limit: int = 100, max_closed_history: int = 500):
        self.exchange = exchange
        self.store = store
        self.notifier = notifier
        self.trailing_activation_pct = trailing_activation_pct
        self.fill_history_limit = fill_history_limit

        self._lock = threading.RLock()
        self._book: Dict[Tuple[str, str], Position] = {}
        self._closed = deque(maxlen=max_closed_history)
        self._opened_at: List[datetime] = []
        self._needs_reconcile: set = set()
        self.persistence_failures = 0

    # =========================================================================
    # CONSULTAS
    # =========================================================================

    def open_positions(self) -> List[Position]:
        """Posicoes ativas (OPEN ou CLOSING)."""
        with self._lock:
            return [p for p in self._book.values() if p.is_active]

    def get(self, instrument: str, side: str) -> Optional[Position]:
        with self._lock:
            return self._book.get((instrument, side))

    def positions_for(self, instrument: str) -> List[Position]:
        with self._lock:
            return [p for p in self._book.values() if p.instrument == instrument]

    def closed_positions(self, limit: Optional[int] = None) -> List[Position]:
        """Fechadas, mais recentes primeiro."""
        with self._lock:
            closed = list(reversed(self._closed))
        return closed[:limit] if limit else closed

    def trades_opened_since(self, since: datetime) -> int:
        """Entradas desde since. Descarta as anteriores ao dia de since."""
        day_start = since.replace(hour=0, minute=0, second=0, microsecond=0)
        with self._lock:
            self._opened_at = [opened for opened in self._opened_at if opened >= day_start]
            return sum(1 for opened in self._opened_at if opened >= since)

    def exposure(self) -> float:
        """Margem total das posicoes ativas."""
        return sum(p.margin for p in self.open_positions())

    @property
    def needs_reconciliation(self) -> List[str]:
        with self._lock:
            return sorted(self._needs_reconcile)

    # =========================================================================
    # PERSISTENCIA
    # =========================================================================

    def _persist(self, action: str, func, *args):
        """Executar escrita no store; falha e logada, contada e notificada."""
        try:
            return func(*args)
        except PersistenceFailure as e:
            self.persistence_failures += 1
            log.error(f"[Store] Falha ao {action}: {e} (estado em memoria mantido)")
            if self.notifier:
                self.notifier.notify(
                    AlertLevel.CRITICAL, 'persistence', 'Falha de persistencia',
                    f"{action}: {e}", data={'failures': self.persistence_failures},
                )
            return None

    def rehydrate(self, params: Optional[ParameterSet] = None) -> int:
        """Restaurar posicoes abertas do store (start-up). Retorna quantas."""
        params = params or ParameterSet()
        restored = 0
        with self._lock:
            for record in self.store.query_trades(status='open'):
                try:
                    position = Position.from_record(record)
                except (KeyError, TypeError, ValueError) as e:
                    log.warning(f"Registro aberto invalido ignorado (id={record.get('id')}): {e}")
                    continue
                if position.key in self._book:
                    continue
                position.trail_percent = _trail_percent(params, position.leverage)
                self._book[position.key] = position
                opened = parse_timestamp(position.opened_at)
                if opened:
                    self._opened_at.append(opened)
                restored += 1
        if restored:
            log.info(f"{restored} posicao(oes) restaurada(s) do store")
        return restored

    # =========================================================================
    # ABERTURA
    # =========================================================================

    def open_position(self, allocation: Allocation, params: ParameterSet,
                      now: Optional[datetime] = None) -> Optional[Position]:
        """
        Abrir posicao a partir de uma alocacao aceita.

        Falha da exchange: posicao descartada, instrumento marcado para
        reconciliacao, sem nova tentativa neste ciclo.
        """
        now = parse_timestamp(now) or utc_now()
        signal = allocation.signal
        side = signal.side
        key = (signal.instrument, side)

        with self._lock:
            existing = self._book.get(key)
            if existing is not None and existing.is_active:
                log.info(f"{signal.instrument} {side}: posicao ja aberta, entrada ignorada")
                return None

            stop_loss, take_profit = stop_and_target(signal.price, side, allocation.leverage, params)
            position = Position(
                instrument=signal.instrument,
                side=side,
                entry_price=signal.price,
                quantity=allocation.quantity,
                leverage=allocation.leverage,
                stop_loss=stop_loss,
                take_profit=take_profit,
                opened_at=now.isoformat(),
                trail_percent=_trail_percent(params, allocation.leverage),
                confidence=signal.confidence,
                score=signal.score,
                reasons=list(signal.reasons),
                entry_snapshot=dict(signal.details.get('indicators', {})),
            )

            try:
                result = self.exchange.open_position(
                    signal.instrument, side, allocation.quantity, allocation.leverage,
                    stop_loss, take_profit,
                ) or {}
            except ExchangeCallFailed as e:
                self._needs_reconcile.add(signal.instrument)
                log.error(f"Falha ao abrir {signal.instrument} {side}: {e} "
                          f"(resultado desconhecido, reconciliacao no proximo ciclo)")
                return None

            fill_price = float(result.get('price') or 0)
            if fill_price > 0 and fill_price != position.entry_price:
                position.entry_price = fill_price
                position.last_price = fill_price
                position.stop_loss, position.take_profit = stop_and_target(
                    fill_price, side, allocation.leverage, params
                )
            position.order_ref = str(result.get('order_id') or '')
            position.transition(PositionStatus.OPEN)
            self._book[key] = position
            self._opened_at.append(now)

            log.info(
                f"ABERTA {position.instrument} {side} qty={position.quantity:.6f} "
                f"@ {position.entry_price:.4f} lev={position.leverage}x "
                f"SL={position.stop_loss:.4f} TP={position.take_profit:.4f} conf={position.confidence:.0f}%"
            )

            position.trade_id = self._persist('inserir trade', self.store.insert_trade, position.to_record())
            return position

    # =========================================================================
    # SAIDAS
    # =========================================================================

    def _update_trailing(self, position: Position, price: float) -> bool:
        """Ratchet do stop, gravado no store e enviado a exchange. Nunca afrouxa."""
        if position.unrealized_pnl_percent(price) <= self.trailing_activation_pct:
            return False

        trail = position.trail_percent / 100
        if position.is_long:
            new_stop = max(position.stop_loss, position.entry_price, price * (1 - trail))
            moved = new_stop > position.stop_loss
        else:
            new_stop = min(position.stop_loss, position.entry_price, price * (1 + trail))
            moved = new_stop < position.stop_loss

        if not moved:
            return False

        log.info(f"Trailing {position.instrument} {position.side}: SL "
                 f"{position.stop_loss:.4f} -> {new_stop:.4f} "
                 f"(pnl={position.unrealized_pnl_percent(price):.1f}%)")
        position.stop_loss = new_stop
        self._persist('gravar trailing stop', self.store.update_trade_stop,
                      position.instrument, position.opened_at, new_stop, position.side)
        self.exchange.set_stop_loss(position.instrument, position.side, new_stop)
        return True

    def evaluate(self, instrument: str, candle: Candle, now: Optional[datetime] = None) -> List[Position]:
        """
        Avaliar saidas das posicoes do instrumento no candle atual.
        Stop e checado antes do alvo.

        Returns:
            posicoes fechadas nesta avaliacao
        """
        closed = []
        with self._lock:
            for position in self.positions_for(instrument):
                if not position.is_active:
                    continue
                position.last_price = candle.close

                if position.status == PositionStatus.CLOSING:
                    result = self.close_position(position, position.pending_reason or 'manual',
                                                 position.pending_exit_price or candle.close, now)
                    if result is not None:
                        closed.append(result)
                    continue

                reason, exit_price = None, None
                if position.is_long:
                    if candle.low <= position.stop_loss:
                        reason, exit_price = 'stop_loss', position.stop_loss
                    elif candle.high >= position.take_profit:
                        reason, exit_price = 'take_profit', position.take_profit
                else:
                    if candle.high >= position.stop_loss:
                        reason, exit_price = 'stop_loss', position.stop_loss
                    elif candle.low <= position.take_profit:
                        reason, exit_price = 'take_profit', position.take_profit

                if reason is None:
                    self._update_trailing(position, candle.close)
                    continue

                result = self.close_position(position, reason, exit_price, now)
                if result is not None:
                    closed.append(result)
        return closed

    def _finalize(self, position: Position, reason: str, exit_price: float, now: datetime):
        """CLOSING -> CLOSED com campos de saida."""
        position.transition(PositionStatus.CLOSED)
        position.exit_price = exit_price
        position.closed_at = now.isoformat()
        position.exit_reason = reason
        position.pnl = position.pnl_at(exit_price)
        position.pnl_percent = position.unrealized_pnl_percent(exit_price)
        opened = parse_timestamp(position.opened_at)
        position.duration_minutes = int(round((now - opened).total_seconds() / 60)) if opened else 0
        position.pending_reason = ''

        self._book.pop(position.key, None)
        self._closed.append(position)

        log.info(
            f"FECHADA {position.instrument} {position.side} [{reason}] @ {exit_price:.4f} "
            f"PnL=${position.pnl:.2f} ({position.pnl_percent:+.2f}%) {position.duration_minutes}min"
        )
        self._persist('registrar saida', self.store.update_trade_exit,
                      position.instrument, position.opened_at, position.exit_fields(), position.side)

    def close_position(self, position: Position, reason: str, exit_price: float,
                       now: Optional[datetime] = None) -> Optional[Position]:
        """
        Fechar posicao. Idempotente: posicao CLOSED nao e alterada.

        Falha da exchange: fica CLOSING ate a reconciliacao ou a proxima tentativa.
        """
        now = parse_timestamp(now) or utc_now()
        with self._lock:
            if position.status == PositionStatus.CLOSED:
                log.debug(f"close ignorado para {position.instrument}: ja fechada")
                return None
            if position.status == PositionStatus.OPEN:
                position.transition(PositionStatus.CLOSING)
                position.pending_reason = reason
                position.pending_exit_price = exit_price

            try:
                self.exchange.close_position(position.instrument, position.side, position.quantity)
            except ExchangeCallFailed as e:
                self._needs_reconcile.add(position.instrument)
                log.error(f"Falha ao fechar {position.instrument} {position.side} [{reason}]: {e} "
                          f"(permanece closing)")
                return None

            self._finalize(position, reason, exit_price, now)
            return position

    # =========================================================================
    # RECONCILIACAO
    # =========================================================================

    @staticmethod
    def _latest_exit_fill(position: Position, fills: Iterable[Dict[str, Any]]) -> Optional[float]:
        """Preco do fill mais recente do lado oposto apos a entrada."""
        opened = parse_timestamp(position.opened_at)
        best_time, best_price = None, None
        for fill in fills:
            if fill.get('symbol') != position.instrument or fill.get('side') == position.side:
                continue
            when = parse_timestamp(fill.get('timestamp'))
            if when is None or (opened and when < opened):
                continue
            if best_time is None or when > best_time:
                best_time, best_price = when, float(fill.get('price') or 0)
        return best_price or None

    def reconcile(self, exchange_positions: Iterable[Dict[str, Any]],
                  fills: Iterable[Dict[str, Any]] = (),
                  params: Optional[ParameterSet] = None,
                  now: Optional[datetime] = None) -> ReconciliationReport:
        """
        Alinhar o book com as posicoes da exchange.

        - local ausente na exchange: fecha como 'reconciled' (ou o motivo
          pendente, se havia fechamento em andamento)
        - exchange desconhecida localmente: adotada como OPEN
        """
        now = parse_timestamp(now) or utc_now()
        params = params or ParameterSet()
        fills = list(fills)
        remote = {}
        for data in exchange_positions:
            remote[(data['symbol'], data['side'])] = data

        report = ReconciliationReport()
        with self._lock:
            for key, position in list(self._book.items()):
                if not position.is_active:
                    continue
                data = remote.get(key)
                if data is not None:
                    mark = float(data.get('mark_price') or 0)
                    if mark > 0:
                        position.last_price = mark
                    if position.status == PositionStatus.CLOSING:
                        report.pending.append(position)
                    continue

                reason = position.pending_reason or 'reconciled'
                exit_price = self._latest_exit_fill(position, fills) or position.last_price
                if position.status == PositionStatus.OPEN:
                    position.transition(PositionStatus.CLOSING)
                log.warning(f"[Reconcile] {position.instrument} {position.side} nao existe na exchange, "
                            f"fechando como {reason} @ {exit_price:.4f}")
                self._finalize(position, reason, exit_price, now)
                report.closed.append(position)

            for key, data in remote.items():
                if key in self._book:
                    continue
                position = self._adopt(data, params, now)
                if position is not None:
                    report.adopted.append(position)

            self._needs_reconcile.clear()

        if report.changed:
            log.info(f"[Reconcile] fechadas={len(report.closed)} adotadas={len(report.adopted)}")
        return report

    def _adopt(self, data: Dict[str, Any], params: ParameterSet, now: datetime) -> Optional[Position]:
        entry_price = float(data.get('entry_price') or 0)
        quantity = float(data.get('quantity') or 0)
        if entry_price <= 0 or quantity <= 0:
            log.warning(f"[Reconcile] posicao remota invalida ignorada: {data}")
            return None

        leverage = int(data.get('leverage') or 1)
        side = data['side']
        stop_loss, take_profit = stop_and_target(entry_price, side, leverage, params)
        opened = parse_timestamp(data.get('opened_at')) or now
        position = Position(
            instrument=data['symbol'],
            side=side,
            entry_price=entry_price,
            quantity=quantity,
            leverage=leverage,
            stop_loss=stop_loss,
            take_profit=take_profit,
            opened_at=opened.isoformat(),
            trail_percent=_trail_percent(params, leverage),
            last_price=float(data.get('mark_price') or entry_price),
            reasons=['Adotada na reconciliacao'],
        )
        position.transition(PositionStatus.OPEN)
        self._book[position.key] = position
        self._opened_at.append(opened)
        log.warning(f"[Reconcile] adotada {position.instrument} {side} qty={quantity} @ {entry_price:.4f} "
                    f"SL={stop_loss:.4f} TP={take_profit:.4f}")
        position.trade_id = self._persist('inserir trade adotado', self.store.insert_trade, position.to_record())
        return position

    def reconcile_with_exchange(self, params: Optional[ParameterSet] = None,
                                now: Optional[datetime] = None) -> ReconciliationReport:
        """
        Buscar posicoes e fills na exchange e reconciliar.

        Raises:
            ExchangeCallFailed: leitura falhou (orquestrador bloqueia entradas no ciclo)
        """
        exchange_positions = self.exchange.get_open_positions()
        fills = self.exchange.get_trade_history(self.fill_history_limit)
        return self.reconcile(exchange_positions, fills, params, now)
