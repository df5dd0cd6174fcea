"""
Configuration Module - Sistema Centralizado
================================================================================
FONTE UNICA DE VERDADE - TODAS AS CONFIGURACOES PASSAM POR AQUI
================================================================================

COMO USAR:
    from autotrader.config import Config

    # Obter parametro
    value = Config.get('scoring.min_score', default=12)

    # Obter secao inteira
    risk = Config.get_section('risk')

    # Recarregar configs (hot-reload)
    Config.reload()

O arquivo config/settings.json (ou AUTOTRADER_CONFIG) e mesclado sobre
DEFAULT_CONFIG. Os parametros aprendidos (ParameterSet) NAO moram aqui:
a secao 'parameters' contem apenas os valores iniciais do aprendizado.
================================================================================
"""
import os
import json
import threading
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime
from dotenv import load_dotenv

load_dotenv(override=True)

log = logging.getLogger(__name__)

CONFIG_FILE = os.getenv('AUTOTRADER_CONFIG', 'config/settings.json')

# =============================================================================
# CONFIGURACAO PADRAO
# =============================================================================
DEFAULT_CONFIG = {
    "version": "1.0",
    "last_updated": "",

    # === EXCHANGE ===
    "exchange": {
        "id": "bybit",
        "use_testnet": True,
        "default_type": "swap",
        "settle": "USDT",
        "timeout_ms": 10000,
        "enable_rate_limit": True,
        "recv_window": 10000,
        "hedge_mode": False,
        "quota_header": "x-bapi-limit-status",
    },

    # === UNIVERSO DE INSTRUMENTOS ===
    "symbols": [
        "BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT", "XRPUSDT",
        "ADAUSDT", "DOGEUSDT", "LINKUSDT", "AVAXUSDT", "MATICUSDT",
        "LTCUSDT", "UNIUSDT", "ATOMUSDT", "APTUSDT", "FILUSDT",
    ],

    # === CICLO ===
    "cycle": {
        "interval_seconds": 300,
        "candle_interval": "5m",
        "candle_count": 200,
        "max_workers": 8,
        "diagnostic_every": 12,
        "learner_every": 24,
        "recent_signals": 50,
        "recent_trades": 50,
    },

    # === PARAMETROS INICIAIS (ParameterSet) ===
    "parameters": {
        "confidence_threshold": 70,
        "stop_loss_percent": 5,
        "take_profit_percent": 15,
        "max_trades_per_day": 50,
        "risk_per_trade": 20,
        "disabled_instruments": [],
        "prioritized_instruments": ["BTCUSDT", "ETHUSDT"],
    },

    # === LIMITES VALIDOS DOS PARAMETROS ===
    "parameter_bounds": {
        "confidence_threshold": [50, 95],
        "stop_loss_percent": [1, 25],
        "take_profit_percent": [2, 60],
        "max_trades_per_day": [5, 100],
        "risk_per_trade": [1, 20],
    },

    # === INDICADORES ===
    "indicators": {
        "rsi_period": 14,
        "atr_period": 14,
        "adx_period": 14,
        "stoch_period": 14,
        "bb_period": 20,
        "bb_std": 2.0,
        "fib_lookback": 100,
    },

    # === SCORING ===
    "scoring": {
        "min_score": 12,
        "min_margin": 3,
        "min_liquidity_score": 40,
        "hold_confidence": 30,
        "low_liquidity_confidence": 20,
        "weak_trend_confidence": 25,
        "prediction_min_confidence": 60,
        "max_confidence": 95,
    },

    # === RISCO / ALOCACAO ===
    "risk": {
        "min_position_pct": 5,
        "max_position_pct": 20,
        "default_min_quantity": 0.001,
        "min_quantities": {
            "BTCUSDT": 0.001,
            "ETHUSDT": 0.01,
            "BNBUSDT": 0.01,
            "SOLUSDT": 0.1,
            "XRPUSDT": 10,
            "ADAUSDT": 10,
            "DOGEUSDT": 100,
            "LINKUSDT": 1,
            "AVAXUSDT": 0.1,
            "MATICUSDT": 10,
            "LTCUSDT": 0.1,
            "UNIUSDT": 1,
            "ATOMUSDT": 1,
            "APTUSDT": 1,
            "FILUSDT": 1,
        },
    },

    # === POSICOES ===
    "positions": {
        "trailing_activation_pct": 10,
        "fill_history_limit": 100,
    },

    # === APRENDIZADO ===
    "learner": {
        "window_hours": 24,
        "win_rate_floor": 45,
        "threshold_step": 5,
        "trade_count_ceiling": 50,
        "reduced_max_trades": 30,
        "instrument_min_trades": 3,
        "instrument_disable_win_rate": 30,
        "instrument_prioritize_win_rate": 65,
    },

    # === MONITORAMENTO ===
    "monitoring": {
        "memory_warning_mb": 500,
        "exchange_failure_alert": 5,
        "credit_limits": {
            "critical": 5,
            "low": 20,
            "warning": 50,
        },
        "max_alert_history": 200,
    },

    # === ERROR HANDLING ===
    "error_handling": {
        "retry": {
            "max_attempts": 3,
            "base_delay": 0.5,
            "max_delay": 10.0,
            "exponential_base": 2.0,
            "jitter": True,
        },
        "circuit_breaker": {
            "exchange": {
                "failure_threshold": 5,
                "recovery_timeout": 60,
                "half_open_max_calls": 3,
            },
            "orders": {
                "failure_threshold": 3,
                "recovery_timeout": 120,
                "half_open_max_calls": 2,
            },
            "data_fetch": {
                "failure_threshold": 10,
                "recovery_timeout": 30,
                "half_open_max_calls": 5,
            },
        },
        "auth_recovery": {
            "max_failures": 3,
        },
    },

    # === ARQUIVOS DE ESTADO ===
    "state": {
        "trades_file": "state/trades.json",
        "parameters_file": "state/parameters.json",
        "lock_file": "state/bot.lock",
        "log_file": "logs/bot.log",
    },
}


class ConfigManager:
    """
    Gerenciador de configuracoes centralizado.
    Singleton thread-safe com hot-reload.
    """
    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._config: Dict = {}
        self._last_load: float = 0
        self._config_lock = threading.RLock()
        self._load_config()
        self._initialized = True

    def _load_config(self):
        """Carregar configuracao do arquivo JSON."""
        with self._config_lock:
            self._config = json.loads(json.dumps(DEFAULT_CONFIG))

            if os.path.exists(CONFIG_FILE):
                try:
                    with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
                        file_config = json.load(f)
                    self._deep_merge(self._config, file_config)
                    log.info(f"Config carregado de {CONFIG_FILE}")
                except (OSError, ValueError) as e:
                    log.warning(f"Erro carregando config: {e}. Usando defaults.")
            else:
                try:
                    self._save_config()
                    log.info(f"Config criado em {CONFIG_FILE}")
                except OSError as e:
                    log.warning(f"Nao foi possivel criar {CONFIG_FILE}: {e}")

            self._last_load = datetime.now().timestamp()

    def _deep_merge(self, base: Dict, override: Dict):
        """Mescla recursivamente override em base."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _save_config(self):
        """Salvar configuracao atual no arquivo."""
        config_dir = os.path.dirname(CONFIG_FILE)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)
        self._config['last_updated'] = datetime.now().isoformat()
        with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
            json.dump(self._config, f, indent=2, ensure_ascii=False)

    def reload(self):
        """Recarregar configuracoes do arquivo."""
        self._load_config()
        log.info("Configuracoes recarregadas")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Obter valor de configuracao por chave.
        Suporta notacao de ponto: 'scoring.min_score'
        """
        with self._config_lock:
            value = self._config
            for k in key.split('.'):
                if isinstance(value, dict) and k in value:
                    value = value[k]
                else:
                    return default
            return value

    def get_section(self, section: str) -> Dict:
        """Obter secao inteira de configuracao (copia)."""
        with self._config_lock:
            return json.loads(json.dumps(self._config.get(section, {})))

    def set(self, key: str, value: Any, save: bool = True):
        """
        Definir valor de configuracao.
        Suporta notacao de ponto: 'cycle.interval_seconds'
        """
        with self._config_lock:
            keys = key.split('.')
            config = self._config
            for k in keys[:-1]:
                if k not in config:
                    config[k] = {}
                config = config[k]
            config[keys[-1]] = value

            if save:
                self._save_config()

    def get_all(self) -> Dict:
        """Obter todas as configuracoes."""
        with self._config_lock:
            return json.loads(json.dumps(self._config))


# =============================================================================
# INSTANCIA GLOBAL (Singleton)
# =============================================================================
_config_manager: Optional[ConfigManager] = None


def _get_manager() -> ConfigManager:
    """Obter instancia do ConfigManager."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


class Config:
    """Interface estatica para acessar configuracoes."""

    @staticmethod
    def get(key: str, default: Any = None) -> Any:
        """Obter valor por chave (suporta 'section.key')."""
        return _get_manager().get(key, default)

    @staticmethod
    def get_section(section: str) -> Dict:
        """Obter secao inteira."""
        return _get_manager().get_section(section)

    @staticmethod
    def set(key: str, value: Any, save: bool = True):
        """Definir valor."""
        _get_manager().set(key, value, save)

    @staticmethod
    def reload():
        """Recarregar do arquivo."""
        _get_manager().reload()

    @staticmethod
    def get_all() -> Dict:
        """Obter todas configs."""
        return _get_manager().get_all()


# =============================================================================
# HELPERS
# =============================================================================
def get_symbols() -> List[str]:
    """Universo completo de instrumentos (antes de filtros)."""
    return list(Config.get('symbols', DEFAULT_CONFIG['symbols']))


def get_parameter_defaults() -> Dict:
    """Valores iniciais do ParameterSet."""
    return Config.get_section('parameters') or dict(DEFAULT_CONFIG['parameters'])


def get_parameter_bounds() -> Dict[str, List[float]]:
    """Faixas validas para cada parametro aprendido."""
    return Config.get_section('parameter_bounds') or dict(DEFAULT_CONFIG['parameter_bounds'])


def get_retry_config() -> Dict:
    """Retorna configuracao de retry."""
    return Config.get('error_handling.retry', {})


def get_circuit_breaker_config(name: str) -> Dict:
    """Retorna configuracao de um circuit breaker especifico."""
    return Config.get(f'error_handling.circuit_breaker.{name}', {})


def get_auth_recovery_config() -> Dict:
    """Retorna configuracao de falhas de autenticacao."""
    return Config.get('error_handling.auth_recovery', {})


# =============================================================================
# CREDENCIAIS (.env)
# =============================================================================
API_KEY = os.getenv('EXCHANGE_API_KEY', '').strip()
SECRET_KEY = os.getenv('EXCHANGE_SECRET_KEY', '').strip()
USE_TESTNET = os.getenv('TESTNET', 'True').lower() == 'true'
