# Adaptive Trading Decision Loop
"""
Autotrader
==========
Loop de decisao de trading com parametros adaptativos.

Modulos:
- config: Configuracoes centralizadas (settings.json + .env)
- indicators: Indicator Engine (snapshot por instrumento)
- volume / sentiment / prediction: analises auxiliares do scorer
- scoring: Signal Scorer (pontuacao aditiva com filtros de qualidade)
- risk: Risk & Allocation Manager
- positions: Position Supervisor (ciclo de vida + reconciliacao)
- learner: Adaptive Parameter Learner
- orchestrator: Cycle Orchestrator + ticker
- exchange: cliente ccxt
- store: historico de trades em JSON
- monitoring: alertas e diagnostico
"""

from .config import Config, API_KEY, SECRET_KEY, USE_TESTNET
from .models import (
    Candle, Signal, SignalDirection, Allocation, Position, PositionStatus, ParameterSet,
)
from .indicators import IndicatorSnapshot, build_snapshot
from .scoring import SignalScorer
from .risk import RiskManager, AllocationResult
from .positions import PositionSupervisor, ReconciliationReport
from .learner import AdaptiveLearner, ParameterStore
from .orchestrator import CycleOrchestrator, CycleTicker, CycleReport

__all__ = [
    # Config
    'Config', 'API_KEY', 'SECRET_KEY', 'USE_TESTNET',
    # Modelos
    'Candle', 'Signal', 'SignalDirection', 'Allocation', 'Position', 'PositionStatus',
    'ParameterSet',
    # Componentes
    'IndicatorSnapshot', 'build_snapshot', 'SignalScorer',
    'RiskManager', 'AllocationResult',
    'PositionSupervisor', 'ReconciliationReport',
    'AdaptiveLearner', 'ParameterStore',
    'CycleOrchestrator', 'CycleTicker', 'CycleReport',
]
