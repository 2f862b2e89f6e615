"""
=============================================================================
INSTINCT POOL - Motor de Pool y Liquidación
=============================================================================
Fachada que expone las operaciones del sistema hacia el servicio del
operador y los clientes de participantes.

Operador: create_platform, pause, resume, set_fee_rate, create_run,
          start_run, settle_run, record_decision_outcome,
          withdraw_collected_fees, emergency_withdraw
Participante (autoautorizado): deposit, withdraw

Cada operación es una solicitud/respuesta discreta: éxito o un único fallo
tipado (ver errors.py). Un fallo nunca deja estado parcial.
=============================================================================
"""

import copy
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .access_control import AccessControl, EmergencyControl, EmergencyRequest
from .config import PoolConfig
from .custody import CustodyBackend, InMemoryCustody
from .deposit_ledger import DepositLedger
from .errors import ParticipationNotFoundError
from .ledger_types import Participation, Platform, PoolState, Run, wallet_account
from .run_lifecycle import RunLifecycle
from .settlement import FeeBreakdown, PayoutQuote, SettlementCalculator, WithdrawalDistributor
from .treasury_ledger import (
    AuditReport,
    TreasuryEntry,
    TreasuryLedger,
    audit_platform,
    audit_run,
)
from .vote_stats import VoteStatsTracker


logger = logging.getLogger(__name__)


@dataclass
class EngineCheckpoint:
    """Copia del estado del motor tomada antes de una operación."""
    state: PoolState
    entries: List[TreasuryEntry]
    pending_requests: Dict[int, EmergencyRequest]
    balances: Optional[Dict[str, int]] = None


class PoolEngine:
    """
    Motor de liquidación del pool.

    Ejemplo:
        engine = PoolEngine()
        engine.create_platform("operator", fee_bps=1500)
        engine.create_run("operator", 1, 10_000_000, 100_000_000, 100)
        engine.deposit("alice", 1, 50_000_000)
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        custody: Optional[CustodyBackend] = None,
        clock: Callable[[], float] = time.time,
        state: Optional[PoolState] = None,
        ledger: Optional[TreasuryLedger] = None,
    ):
        self.config = config or PoolConfig()
        self.custody = custody if custody is not None else InMemoryCustody()
        self.state = state or PoolState()
        self.ledger = ledger or TreasuryLedger(clock=clock)
        self._clock = clock

        self.access = AccessControl(self.state, self.config)
        self.emergency = EmergencyControl(
            self.state, self.custody, self.ledger, self.access, self.config, clock
        )
        self.deposits = DepositLedger(self.state, self.custody, self.ledger, self.access)
        self.calculator = SettlementCalculator(self.state, self.custody, self.ledger, self.access)
        self.lifecycle = RunLifecycle(
            self.state, self.custody, self.access, self.calculator, self.config, clock
        )
        self.distributor = WithdrawalDistributor(
            self.state, self.custody, self.ledger, self.config
        )
        self.votes = VoteStatsTracker(self.state, self.access, self.config)

    # =========================================================================
    # OPERACIONES DE PLATAFORMA (operador)
    # =========================================================================

    def create_platform(self, operator: str, fee_bps: Optional[int] = None) -> Platform:
        if fee_bps is None:
            fee_bps = self.config.DEFAULT_FEE_BPS
        platform = self.access.initialize(operator, fee_bps)
        self.custody.open_account(platform.fee_account)
        return platform

    def pause(self, caller: str) -> Platform:
        return self.emergency.pause(caller)

    def resume(self, caller: str) -> Platform:
        return self.emergency.resume(caller)

    def set_fee_rate(self, caller: str, new_bps: int) -> Platform:
        return self.access.set_fee_rate(caller, new_bps)

    def withdraw_collected_fees(self, caller: str, amount: int, destination: str) -> Platform:
        return self.calculator.withdraw_collected_fees(caller, amount, destination)

    # =========================================================================
    # CICLO DE VIDA DEL RUN (operador)
    # =========================================================================

    def create_run(
        self,
        caller: str,
        run_id: int,
        min_deposit: int,
        max_deposit: int,
        max_participants: int,
    ) -> Run:
        return self.lifecycle.create(caller, run_id, min_deposit, max_deposit, max_participants)

    def start_run(self, caller: str, run_id: int) -> Run:
        return self.lifecycle.start(caller, run_id)

    def settle_run(self, caller: str, run_id: int, final_balance: int) -> FeeBreakdown:
        return self.lifecycle.settle(caller, run_id, final_balance)

    def record_decision_outcome(
        self, caller: str, run_id: int, participant: str, correct: int, total: int
    ) -> Participation:
        return self.votes.record_decision_outcome(caller, run_id, participant, correct, total)

    # =========================================================================
    # OPERACIONES DE PARTICIPANTE
    # =========================================================================

    def deposit(self, participant: str, run_id: int, amount: int) -> Participation:
        return self.deposits.deposit(participant, run_id, amount)

    def withdraw(self, participant: str, run_id: int) -> PayoutQuote:
        run = self.access.require_run(run_id)
        return self.distributor.withdraw(run, participant)

    # =========================================================================
    # EMERGENCIA (operador, plataforma pausada)
    # =========================================================================

    def request_emergency_withdraw(
        self, caller: str, run_id: int, amount: int, destination: str
    ) -> EmergencyRequest:
        return self.emergency.request_emergency_withdraw(caller, run_id, amount, destination)

    def cancel_emergency_withdraw(self, caller: str, run_id: int) -> EmergencyRequest:
        return self.emergency.cancel_emergency_withdraw(caller, run_id)

    def emergency_withdraw(
        self, caller: str, run_id: int, amount: int, destination: str
    ) -> Run:
        return self.emergency.emergency_withdraw(caller, run_id, amount, destination)

    # =========================================================================
    # CONSULTAS
    # =========================================================================

    def get_platform(self) -> Platform:
        return self.access.platform()

    def get_run(self, run_id: int) -> Run:
        return self.access.require_run(run_id)

    def get_participation(self, run_id: int, participant: str) -> Participation:
        self.access.require_run(run_id)
        participation = self.state.get_participation(run_id, participant)
        if participation is None:
            raise ParticipationNotFoundError(
                f"{participant} has no participation in run #{run_id}"
            )
        return participation

    def list_participations(self, run_id: int) -> List[Participation]:
        self.access.require_run(run_id)
        return self.state.participations_for(run_id)

    def custody_balance(self, run_id: int) -> int:
        return self.custody.balance_of(self.access.require_run(run_id).vault)

    def wallet_balance(self, participant: str) -> int:
        return self.custody.balance_of(wallet_account(participant))

    def preview_payout(self, run_id: int, participant: str) -> PayoutQuote:
        run = self.access.require_run(run_id)
        return self.distributor.preview(run, participant)

    def audit_run(self, run_id: int) -> AuditReport:
        run = self.access.require_run(run_id)
        return audit_run(
            run, self.state.participations_for(run_id), self.custody.balance_of(run.vault)
        )

    def audit_platform(self) -> AuditReport:
        platform = self.access.platform()
        return audit_platform(
            platform, self.custody.balance_of(platform.fee_account), self.ledger
        )

    def treasury_summary(self) -> Dict[str, Any]:
        summary = self.ledger.get_treasury_summary()
        if self.state.platform is not None:
            platform = self.state.platform
            summary["fee_account_balance"] = self.custody.balance_of(platform.fee_account)
            summary["total_fees_collected"] = platform.total_fees_collected
            summary["fees_withdrawn"] = platform.fees_withdrawn
        return summary

    def format_amount(self, units: int) -> str:
        """Representación legible de unidades base (ej. 61875000 -> '61.875000 USDC')."""
        scale = Decimal(10) ** self.config.TOKEN_DECIMALS
        value = (Decimal(units) / scale).quantize(Decimal(1) / scale)
        return f"{value} {self.config.TOKEN_SYMBOL}"

    # =========================================================================
    # CHECKPOINTS (rollback cuando falla la persistencia)
    # =========================================================================

    def checkpoint(self) -> EngineCheckpoint:
        """
        Captura estado, ledger, solicitudes de emergencia y, con la custodia
        en memoria, los balances. Una custodia externa no se puede revertir
        desde aquí.
        """
        balances = None
        if isinstance(self.custody, InMemoryCustody):
            balances = dict(self.custody.balances)
        return EngineCheckpoint(
            state=copy.deepcopy(self.state),
            entries=list(self.ledger.entries),
            pending_requests=dict(self.emergency.pending_requests),
            balances=balances,
        )

    def rollback(self, checkpoint: EngineCheckpoint) -> None:
        """Restaura el motor al checkpoint, en sitio."""
        self.state.restore_from(checkpoint.state)
        self.ledger.restore(checkpoint.entries)
        self.emergency.pending_requests.clear()
        self.emergency.pending_requests.update(checkpoint.pending_requests)
        if checkpoint.balances is not None:
            self.custody.balances.clear()
            self.custody.balances.update(checkpoint.balances)
        logger.warning(
            "[ENGINE] Rolled back to %s runs, %s ledger entries",
            len(self.state.runs), len(self.ledger.entries),
        )
