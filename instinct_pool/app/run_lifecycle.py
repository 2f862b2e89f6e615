"""
=============================================================================
INSTINCT POOL - Ciclo de Vida del Run (FSM)
=============================================================================
WAITING -> ACTIVE -> SETTLED

- create: run nuevo en WAITING con contadores en cero y vault abierto
- start: requiere al menos MIN_PARTICIPANTS_TO_START participantes, para que
  un solo actor no se garantice un pago sin riesgo
- settle: el balance reportado debe coincidir EXACTAMENTE con la custodia y
  la fase activa debe haber durado el mínimo configurado
=============================================================================
"""

import logging
import time
from typing import Callable

from .access_control import AccessControl
from .checked_math import ensure_u64
from .config import PoolConfig
from .custody import CustodyBackend
from .errors import (
    AlreadyDoneError,
    BalanceMismatchError,
    InvalidRunStatusError,
    OutOfRangeError,
)
from .ledger_types import PoolState, Run, RunStatus
from .settlement import FeeBreakdown, SettlementCalculator


logger = logging.getLogger(__name__)


class RunLifecycle:
    """Única vía para cambiar el estado de un run."""

    def __init__(
        self,
        state: PoolState,
        custody: CustodyBackend,
        access: AccessControl,
        calculator: SettlementCalculator,
        config: PoolConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.custody = custody
        self.access = access
        self.calculator = calculator
        self.config = config
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def create(
        self,
        caller: str,
        run_id: int,
        min_deposit: int,
        max_deposit: int,
        max_participants: int,
    ) -> Run:
        platform = self.access.require_operator(caller)
        self.access.require_unpaused()
        ensure_u64(run_id, "run_id")
        ensure_u64(min_deposit, "min_deposit")
        ensure_u64(max_deposit, "max_deposit")

        if self.state.get_run(run_id) is not None:
            raise AlreadyDoneError(f"Run #{run_id} already exists")
        if min_deposit == 0:
            raise OutOfRangeError("min_deposit must be greater than zero")
        if max_deposit < min_deposit:
            raise OutOfRangeError("max_deposit must be >= min_deposit")
        if not (
            self.config.MIN_PARTICIPANTS_LIMIT
            <= max_participants
            <= self.config.MAX_PARTICIPANTS_LIMIT
        ):
            raise OutOfRangeError(
                f"max_participants must be within [{self.config.MIN_PARTICIPANTS_LIMIT}, "
                f"{self.config.MAX_PARTICIPANTS_LIMIT}]"
            )

        run = Run(
            run_id=run_id,
            min_deposit=min_deposit,
            max_deposit=max_deposit,
            max_participants=max_participants,
            created_at=self._now(),
        )
        self.state.commit([(platform, platform.version, {"total_runs": platform.total_runs + 1})])
        self.state.add_run(run)
        self.custody.open_account(run.vault)

        logger.info(
            "[RUN] Run #%s created - Min: %s Max: %s Participants: %s",
            run_id, min_deposit, max_deposit, max_participants,
        )
        return run

    def start(self, caller: str, run_id: int) -> Run:
        self.access.require_operator(caller)
        run = self.access.require_run(run_id)
        if run.status != RunStatus.WAITING:
            raise InvalidRunStatusError(f"Run #{run_id} is {run.status.value}, expected WAITING")
        if run.participant_count < self.config.MIN_PARTICIPANTS_TO_START:
            raise OutOfRangeError(
                f"Run #{run_id} has {run.participant_count} participants, "
                f"needs {self.config.MIN_PARTICIPANTS_TO_START}"
            )

        self.state.commit(
            [(run, run.version, {"started_at": self._now()})],
            transitions=[(run, RunStatus.ACTIVE)],
        )
        logger.info(
            "[RUN] Run #%s started with %s participants and %s deposited",
            run_id, run.participant_count, run.total_deposited,
        )
        return run

    def settle(self, caller: str, run_id: int, reported_final_balance: int) -> FeeBreakdown:
        platform = self.access.require_operator(caller)
        run = self.access.require_run(run_id)
        ensure_u64(reported_final_balance, "final_balance")
        if run.status != RunStatus.ACTIVE:
            raise InvalidRunStatusError(f"Run #{run_id} is {run.status.value}, expected ACTIVE")

        vault_balance = self.custody.balance_of(run.vault)
        if vault_balance != reported_final_balance:
            raise BalanceMismatchError(
                f"Vault balance {vault_balance} does not match reported {reported_final_balance}",
                {"vault_balance": vault_balance, "reported": reported_final_balance},
            )

        now = self._now()
        elapsed = now - run.started_at
        if elapsed < self.config.MIN_RUN_DURATION_SECONDS:
            raise InvalidRunStatusError(
                f"Run #{run_id} active for {elapsed}s, minimum is "
                f"{self.config.MIN_RUN_DURATION_SECONDS}s"
            )

        breakdown = self.calculator.apply(run, platform, reported_final_balance, now, caller)
        logger.info(
            "[SETTLEMENT] Run #%s settled - Initial: %s Final: %s Fee: %s Distributable: %s",
            run_id, run.total_deposited, reported_final_balance, breakdown.fee,
            breakdown.distributable,
        )
        return breakdown
