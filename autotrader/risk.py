"""
Risk & Allocation Manager.

Decide tamanho e quais sinais executar a partir da quantidade minima de cada
instrumento e do saldo disponivel. Sem estado proprio: le as posicoes abertas,
nao as possui.

Politica: gulosa por confianca. Um sinal que nao cabe no saldo restante e
descartado neste ciclo (nao fica na fila). Nao e otimizacao de portfolio.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .error_handling import InsufficientBudget
from .models import Allocation, ParameterSet, Position, Signal

log = logging.getLogger(__name__)

DEFAULT_MIN_QUANTITY = 0.001


@dataclass
class AllocationResult:
    accepted: List[Allocation] = field(default_factory=list)
    rejected: List[Tuple[Signal, str]] = field(default_factory=list)

    @property
    def total_cost(self) -> float:
        return sum(a.capital_cost for a in self.accepted)


def open_exposure(positions: Iterable[Position]) -> float:
    """Margem alocada em posicoes abertas (qty * entry / leverage)."""
    return sum(p.margin for p in positions)


class RiskManager:
    """Dimensionamento por quantidade minima + selecao gulosa."""

    def __init__(self, min_quantities: Optional[Dict[str, float]] = None,
                 default_min_quantity: float = DEFAULT_MIN_QUANTITY,
                 min_position_pct: float = 5, max_position_pct: float = 20):
        self.min_quantities = dict(min_quantities or {})
        self.default_min_quantity = default_min_quantity
        self.min_position_pct = min_position_pct
        self.max_position_pct = max_position_pct

    @classmethod
    def from_config(cls, settings: Dict) -> 'RiskManager':
        return cls(
            min_quantities=settings.get('min_quantities', {}),
            default_min_quantity=settings.get('default_min_quantity', DEFAULT_MIN_QUANTITY),
            min_position_pct=settings.get('min_position_pct', 5),
            max_position_pct=settings.get('max_position_pct', 20),
        )

    def min_quantity(self, instrument: str) -> float:
        return self.min_quantities.get(instrument, self.default_min_quantity)

    def ceiling_pct(self, params: ParameterSet) -> float:
        return max(self.min_position_pct, min(self.max_position_pct, params.risk_per_trade))

    def size(self, signal: Signal, equity: float, params: ParameterSet) -> Allocation:
        """
        Calcular quantidade e custo de um sinal.

        Raises:
            InsufficientBudget: quantidade minima exige mais que o teto do saldo
        """
        price = signal.price
        leverage = max(int(signal.leverage), 1)
        ceiling = self.ceiling_pct(params)
        if price <= 0 or equity <= 0:
            raise InsufficientBudget(signal.instrument, float('inf'), ceiling)

        min_qty = self.min_quantity(signal.instrument)
        min_cost = min_qty * price / leverage
        min_pct = min_cost / equity * 100

        if min_pct <= self.min_position_pct:
            pct = self.min_position_pct
        elif min_pct <= ceiling:
            pct = min(math.ceil(min_pct), ceiling)
        else:
            raise InsufficientBudget(signal.instrument, min_pct, ceiling)

        quantity = max(equity * pct / 100 * leverage / price, min_qty)
        cost = quantity * price / leverage
        return Allocation(
            signal=signal,
            quantity=quantity,
            leverage=leverage,
            capital_cost=cost,
            position_pct=cost / equity * 100,
        )

    def _priority(self, params: ParameterSet):
        prioritized = {s: i for i, s in enumerate(params.prioritized_instruments)}

        def key(signal: Signal):
            # Confianca desc; empate: priorizados primeiro, depois nome
            return (-signal.confidence, prioritized.get(signal.instrument, len(prioritized)),
                    signal.instrument)
        return key

    def select(self, signals: Iterable[Signal], equity: float,
               open_positions: Iterable[Position],
               params: Optional[ParameterSet] = None) -> AllocationResult:
        """
        Selecionar sinais para execucao.

        Args:
            signals: sinais do ciclo
            equity: saldo total
            open_positions: posicoes abertas (exposicao ja alocada)
            params: ParameterSet atual

        Returns:
            AllocationResult com aceitos (ordem de execucao) e rejeitados
        """
        params = params or ParameterSet()
        positions = list(open_positions)
        held = {p.key for p in positions}
        used = open_exposure(positions)
        result = AllocationResult()

        candidates = []
        for signal in signals:
            if not signal.actionable:
                continue
            if signal.confidence < params.confidence_threshold:
                result.rejected.append((signal, 'confidence_below_threshold'))
                continue
            if (signal.instrument, signal.side) in held:
                result.rejected.append((signal, 'position_already_open'))
                continue
            candidates.append(signal)

        for signal in sorted(candidates, key=self._priority(params)):
            try:
                allocation = self.size(signal, equity, params)
            except InsufficientBudget as e:
                log.info(f"[Risk] {signal.instrument}: {e}")
                result.rejected.append((signal, 'insufficient_budget'))
                continue

            available = equity - used
            if allocation.capital_cost > available:
                log.info(
                    f"[Risk] {signal.instrument}: custo ${allocation.capital_cost:.2f} "
                    f"> disponivel ${available:.2f}, pulando"
                )
                result.rejected.append((signal, 'exceeds_available_balance'))
                continue

            used += allocation.capital_cost
            held.add((signal.instrument, signal.side))
            result.accepted.append(allocation)
            log.info(
                f"[Risk] {signal.instrument} {signal.side}: qty={allocation.quantity:.6f} "
                f"lev={allocation.leverage}x custo=${allocation.capital_cost:.2f} "
                f"({allocation.position_pct:.1f}%)"
            )

        return result
