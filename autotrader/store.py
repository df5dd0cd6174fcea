"""
Trade Store - historico de trades em JSON.

Cada trade tem um registro de entrada (status 'open') que recebe os campos
de saida no fechamento (status 'closed'). Escritas sao atomicas
(save_json_atomic); falha de escrita levanta PersistenceFailure.
"""
import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from .error_handling import PersistenceFailure
from .utils import save_json_atomic, load_json_safe, parse_timestamp

log = logging.getLogger(__name__)


class TradeStore:
    """Store JSON protegido por lock. Fonte do learner e da reidratacao."""

    def __init__(self, path: str = 'state/trades.json'):
        self.path = path
        self._lock = threading.Lock()
        self._trades: List[Dict[str, Any]] = load_json_safe(path, default=[])
        if not isinstance(self._trades, list):
            log.warning(f"Formato invalido em {path}, iniciando historico vazio")
            self._trades = []

    def _flush(self):
        try:
            save_json_atomic(self.path, self._trades)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Falha gravando {self.path}: {e}") from e

    def insert_trade(self, record: Dict[str, Any]) -> str:
        """
        Inserir registro de entrada.

        Returns:
            id do trade (maior id existente + 1)
        """
        with self._lock:
            max_id = max((int(t.get('id', 0)) for t in self._trades), default=0)
            trade = dict(record)
            trade['id'] = str(max_id + 1)
            trade.setdefault('status', 'open')
            self._trades.append(trade)
            try:
                self._flush()
            except PersistenceFailure:
                self._trades.pop()
                raise
            return trade['id']

    def _update_open_trade(self, instrument: str, opened_at: str, fields: Dict[str, Any],
                           side: Optional[str] = None) -> bool:
        with self._lock:
            for trade in reversed(self._trades):
                if (trade.get('symbol') != instrument or trade.get('entry_time') != opened_at
                        or trade.get('status') != 'open'):
                    continue
                if side and trade.get('side') and trade.get('side') != side:
                    continue
                previous = dict(trade)
                trade.update(fields)
                try:
                    self._flush()
                except PersistenceFailure:
                    trade.clear()
                    trade.update(previous)
                    raise
                return True
        log.warning(f"Trade aberto nao encontrado para {instrument} {side or ''} @ {opened_at}")
        return False

    def update_trade_exit(self, instrument: str, opened_at: str, exit_fields: Dict[str, Any],
                          side: Optional[str] = None) -> bool:
        """
        Gravar campos de saida no trade aberto (instrumento, entry_time e lado).

        Returns:
            False se nenhum trade aberto corresponde
        """
        return self._update_open_trade(instrument, opened_at, exit_fields, side)

    def update_trade_stop(self, instrument: str, opened_at: str, stop_loss: float,
                          side: Optional[str] = None) -> bool:
        """Gravar o stop atual (trailing) no trade aberto."""
        return self._update_open_trade(instrument, opened_at, {'stop_loss': stop_loss}, side)

    def query_trades(self, status: Optional[str] = None, instrument: Optional[str] = None,
                     since: Optional[datetime] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Consultar trades (mais recentes primeiro).

        since filtra por exit_time nos fechados e entry_time nos demais.
        """
        with self._lock:
            trades = [dict(t) for t in self._trades]

        result = []
        for trade in reversed(trades):
            if status and trade.get('status') != status:
                continue
            if instrument and trade.get('symbol') != instrument:
                continue
            if since is not None:
                stamp = trade.get('exit_time') if trade.get('status') == 'closed' else trade.get('entry_time')
                when = parse_timestamp(stamp)
                if when is None or when < since:
                    continue
            result.append(trade)
            if limit and len(result) >= limit:
                break
        return result

    def check_writable(self) -> bool:
        """True se o diretorio do store aceita escrita."""
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            log.warning(f"Diretorio do store indisponivel: {e}")
            return False
        return os.access(directory, os.W_OK)

    def __len__(self):
        with self._lock:
            return len(self._trades)
