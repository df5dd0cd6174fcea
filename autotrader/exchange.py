"""
Exchange Client - acesso a exchange via ccxt (Bybit perpetuos USDT por padrao).

Leituras: retry com backoff + circuit breaker, depois ExchangeCallFailed.
Escritas (abrir/fechar): NUNCA retentadas. Erro de rede/timeout vira
ExchangeCallFailed(unknown_outcome=True) e a reconciliacao resolve.
Falha de autenticacao: ExchangeCallFailed(critical=True) + saude critica.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import ccxt
import pandas as pd

from .config import Config, API_KEY, SECRET_KEY, USE_TESTNET, get_retry_config, get_circuit_breaker_config
from .error_handling import (
    ExchangeCallFailed, RetryConfig, calculate_delay, classify_exception, get_circuit_breaker,
    record_critical_failure,
)
from .models import OHLCV_COLUMNS

log = logging.getLogger(__name__)


def to_market_symbol(instrument: str, settle: str = 'USDT') -> str:
    """BTCUSDT -> BTC/USDT:USDT"""
    if '/' in instrument:
        return instrument
    if instrument.endswith(settle):
        base = instrument[:-len(settle)]
        return f"{base}/{settle}:{settle}"
    return instrument


def from_market_symbol(symbol: str) -> str:
    """BTC/USDT:USDT -> BTCUSDT"""
    return symbol.split(':')[0].replace('/', '')


def _side_label(side: str) -> str:
    """ccxt ('buy'/'long') -> 'Buy'; ('sell'/'short') -> 'Sell'."""
    return 'Buy' if str(side).lower() in ('buy', 'long') else 'Sell'


class ExchangeClient:
    """Colaborador de exchange usado pelo orquestrador e pelo supervisor."""

    def __init__(self, exchange: Optional[ccxt.Exchange] = None, settings: Optional[Dict] = None,
                 retry: Optional[RetryConfig] = None):
        self.settings = settings or Config.get_section('exchange')
        self.settle = self.settings.get('settle', 'USDT')
        self.retry = retry or RetryConfig.from_dict(get_retry_config())
        self.exchange = exchange or self._create_exchange()
        self.consecutive_failures = 0

        cb_exchange = get_circuit_breaker_config('exchange')
        cb_orders = get_circuit_breaker_config('orders')
        cb_data = get_circuit_breaker_config('data_fetch')
        self._exchange_cb = get_circuit_breaker('exchange', **cb_exchange)
        self._orders_cb = get_circuit_breaker('orders', **cb_orders)
        self._data_cb = get_circuit_breaker('data_fetch', **cb_data)

    def _create_exchange(self) -> ccxt.Exchange:
        """Criar conexao ccxt a partir do config."""
        exchange_id = self.settings.get('id', 'bybit')
        exchange_class = getattr(ccxt, exchange_id)
        exchange = exchange_class({
            'apiKey': API_KEY,
            'secret': SECRET_KEY,
            'enableRateLimit': self.settings.get('enable_rate_limit', True),
            'timeout': self.settings.get('timeout_ms', 10000),
            'options': {
                'defaultType': self.settings.get('default_type', 'swap'),
                'recvWindow': self.settings.get('recv_window', 10000),
            },
        })
        if USE_TESTNET and self.settings.get('use_testnet', True):
            exchange.set_sandbox_mode(True)
            log.info("Modo TESTNET ativo")
        return exchange

    def market(self, instrument: str) -> str:
        return to_market_symbol(instrument, self.settle)

    # =========================================================================
    # CHAMADAS
    # =========================================================================

    def _auth_failure(self, operation: str, error: Exception) -> ExchangeCallFailed:
        count = record_critical_failure(f"{operation}: {error}")
        log.critical(f"Auth error {operation}: {error} (falhas criticas={count})")
        return ExchangeCallFailed(operation, str(error), critical=True, cause=error)

    def _read(self, operation: str, func: Callable[[], Any], breaker=None) -> Any:
        """Leitura com retry/backoff e circuit breaker."""
        breaker = breaker or self._exchange_cb
        if not breaker.can_execute():
            raise ExchangeCallFailed(operation, f"circuit breaker [{breaker.name}] aberto")

        for attempt in range(self.retry.max_attempts):
            try:
                result = func()
                breaker.record_success()
                self.consecutive_failures = 0
                return result

            except ccxt.BaseError as e:
                kind = classify_exception(e)
                if kind == 'critical':
                    self.consecutive_failures += 1
                    raise self._auth_failure(operation, e) from e

                breaker.record_failure()
                if kind == 'retryable' and attempt < self.retry.max_attempts - 1:
                    delay = calculate_delay(attempt, self.retry)
                    log.warning(f"Retry {attempt + 1}/{self.retry.max_attempts} {operation}: "
                                f"{type(e).__name__} - aguardando {delay:.1f}s")
                    time.sleep(delay)
                    continue

                self.consecutive_failures += 1
                if kind == 'retryable':
                    log.error(f"Max retries {operation}: {e}")
                else:
                    log.error(f"Erro {operation}: {e}")
                raise ExchangeCallFailed(operation, str(e), cause=e) from e

        raise ExchangeCallFailed(operation, 'tentativas esgotadas')

    def _write(self, operation: str, func: Callable[[], Any]) -> Any:
        """Escrita sem retry. Erro de transporte = resultado desconhecido."""
        if not self._orders_cb.can_execute():
            raise ExchangeCallFailed(operation, 'circuit breaker [orders] aberto')
        try:
            result = func()
            self._orders_cb.record_success()
            self.consecutive_failures = 0
            return result

        except ccxt.BaseError as e:
            kind = classify_exception(e)
            if kind == 'critical':
                self.consecutive_failures += 1
                raise self._auth_failure(operation, e) from e
            if kind == 'non_retryable':
                # Rejeitada pela exchange: resultado conhecido
                log.error(f"Ordem rejeitada {operation}: {e}")
                raise ExchangeCallFailed(operation, str(e), cause=e) from e

            self._orders_cb.record_failure()
            self.consecutive_failures += 1
            log.error(f"Resultado desconhecido {operation}: {e}")
            raise ExchangeCallFailed(operation, str(e), unknown_outcome=True, cause=e) from e

    # =========================================================================
    # LEITURAS
    # =========================================================================

    def get_candles(self, instrument: str, interval: str = '5m', limit: int = 200) -> pd.DataFrame:
        """OHLCV como DataFrame (vazio se a exchange nao tem dados)."""
        symbol = self.market(instrument)
        ohlcv = self._read(f"fetch_ohlcv {instrument}",
                           lambda: self.exchange.fetch_ohlcv(symbol, interval, limit=limit),
                           self._data_cb)
        if not ohlcv:
            return pd.DataFrame(columns=OHLCV_COLUMNS)
        df = pd.DataFrame(ohlcv, columns=OHLCV_COLUMNS)
        df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
        return df

    def get_price(self, instrument: str) -> float:
        symbol = self.market(instrument)
        ticker = self._read(f"fetch_ticker {instrument}", lambda: self.exchange.fetch_ticker(symbol),
                            self._data_cb)
        return float(ticker.get('last') or ticker.get('close') or 0)

    def get_balance(self) -> float:
        """Saldo total na moeda de liquidacao."""
        balance = self._read('fetch_balance', self.exchange.fetch_balance)
        return float((balance.get('total') or {}).get(self.settle, 0) or 0)

    def get_open_positions(self) -> List[Dict[str, Any]]:
        """Posicoes com contratos > 0, em formato neutro."""
        positions = self._read('fetch_positions', self.exchange.fetch_positions)
        result = []
        for p in positions:
            contracts = abs(float(p.get('contracts') or 0))
            if contracts <= 0:
                continue
            result.append({
                'symbol': from_market_symbol(p.get('symbol', '')),
                'side': _side_label(p.get('side', '')),
                'entry_price': float(p.get('entryPrice') or 0),
                'quantity': contracts,
                'leverage': int(float(p.get('leverage') or 1)),
                'mark_price': float(p.get('markPrice') or 0),
                'opened_at': p.get('timestamp'),
            })
        return result

    def get_trade_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Fills recentes (mais antigos primeiro)."""
        trades = self._read('fetch_my_trades', lambda: self.exchange.fetch_my_trades(None, limit=limit))
        return [
            {
                'symbol': from_market_symbol(t.get('symbol', '')),
                'side': _side_label(t.get('side', '')),
                'price': float(t.get('price') or 0),
                'quantity': float(t.get('amount') or 0),
                'timestamp': t.get('timestamp'),
                'order_id': t.get('order'),
            }
            for t in trades
        ]

    # =========================================================================
    # ESCRITAS
    # =========================================================================

    def set_leverage(self, instrument: str, leverage: int) -> bool:
        try:
            self.exchange.set_leverage(leverage, self.market(instrument))
            return True
        except ccxt.BaseError as e:
            if 'not modified' not in str(e).lower() and 'no need to change' not in str(e).lower():
                log.warning(f"Erro set leverage {instrument}: {e}")
            return False

    def open_position(self, instrument: str, side: str, quantity: float, leverage: int,
                      stop_loss: float, take_profit: float) -> Dict[str, Any]:
        """Ordem a mercado com SL/TP anexados. Retorna order_id e preco medio."""
        symbol = self.market(instrument)
        self.set_leverage(instrument, leverage)
        params = {
            'stopLoss': {'triggerPrice': stop_loss},
            'takeProfit': {'triggerPrice': take_profit},
        }
        order = self._write(
            f"open {instrument} {side}",
            lambda: self.exchange.create_order(symbol, 'market', side.lower(), quantity, None, params),
        )
        log.info(f"Ordem executada: {side.upper()} {instrument} qty={quantity:.6f} lev={leverage}x")
        return {'order_id': order.get('id'), 'price': order.get('average') or order.get('price')}

    def close_position(self, instrument: str, side: str, quantity: float) -> Dict[str, Any]:
        """Fechar (reduceOnly) com ordem a mercado no lado oposto."""
        symbol = self.market(instrument)
        close_side = 'sell' if side == 'Buy' else 'buy'
        order = self._write(
            f"close {instrument} {side}",
            lambda: self.exchange.create_order(symbol, 'market', close_side, quantity, None,
                                               {'reduceOnly': True}),
        )
        log.info(f"Posicao fechada na exchange: {instrument} {side} qty={quantity:.6f}")
        return {'order_id': order.get('id'), 'price': order.get('average') or order.get('price')}

    def set_stop_loss(self, instrument: str, side: str, stop_loss: float) -> bool:
        """
        Mover o SL ja anexado a posicao (endpoint trading-stop da Bybit).

        Best-effort: falha e logada e o supervisor segue com o stop local.
        """
        method = getattr(self.exchange, 'private_post_v5_position_trading_stop', None)
        if method is None:
            log.debug(f"Exchange sem trading-stop, SL de {instrument} so local")
            return False
        position_idx = 0
        if self.settings.get('hedge_mode'):
            position_idx = 1 if side == 'Buy' else 2
        request = {
            'category': 'linear',
            'symbol': instrument,
            'stopLoss': str(stop_loss),
            'slTriggerBy': 'LastPrice',
            'tpslMode': 'Full',
            'positionIdx': position_idx,
        }
        try:
            self._write(f"trading_stop {instrument} {side}", lambda: method(request))
        except ExchangeCallFailed as e:
            log.warning(f"SL de {instrument} {side} nao atualizado na exchange: {e}")
            return False
        log.info(f"SL atualizado na exchange: {instrument} {side} -> {stop_loss:.4f}")
        return True

    # =========================================================================
    # QUOTA
    # =========================================================================

    def remaining_quota(self) -> Optional[float]:
        """Requisicoes restantes na janela de rate limit (header da ultima resposta)."""
        header = str(self.settings.get('quota_header', 'x-bapi-limit-status')).lower()
        headers = getattr(self.exchange, 'last_response_headers', None) or {}
        for key, value in headers.items():
            if str(key).lower() != header:
                continue
            try:
                return float(value)
            except (TypeError, ValueError):
                log.debug(f"Header de quota invalido: {key}={value}")
                return None
        return None
