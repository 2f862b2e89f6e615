"""
=============================================================================
INSTINCT POOL - Control de Acceso y Control de Emergencia
=============================================================================
AccessControl autoriza las operaciones privilegiadas contra la identidad del
operador. EmergencyControl gestiona la pausa global y el retiro de emergencia.

La pausa bloquea SOLO depósitos y creación de runs. La liquidación y los
retiros de runs ya liquidados nunca se congelan.

El retiro de emergencia evita por completo la contabilidad por participante:
es la operación de mayor riesgo del sistema. Requiere pausa explícita y,
opcionalmente, un timelock de dos fases (solicitud -> espera -> ejecución).
=============================================================================
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .checked_math import checked_add, ensure_u64
from .config import PoolConfig
from .custody import CustodyBackend, transfer_and_commit
from .errors import (
    AlreadyDoneError,
    AuthorizationError,
    InsufficientFundsError,
    InvalidStateError,
    OutOfRangeError,
    PlatformNotInitializedError,
    PlatformNotPausedError,
    PlatformPausedError,
    RunNotFoundError,
)
from .ledger_types import Platform, PoolState, Run, is_reserved_account
from .treasury_ledger import EntryType, TreasuryLedger


logger = logging.getLogger(__name__)


# =============================================================================
# ACCESS CONTROL
# =============================================================================

class AccessControl:
    """Autorización contra la identidad del operador."""

    def __init__(self, state: PoolState, config: PoolConfig):
        self.state = state
        self.config = config

    def platform(self) -> Platform:
        if self.state.platform is None:
            raise PlatformNotInitializedError("Platform has not been created")
        return self.state.platform

    def require_operator(self, caller: str) -> Platform:
        platform = self.platform()
        if caller != platform.operator:
            logger.warning("[ACCESS] Denied operator action for %s", caller)
            raise AuthorizationError(f"{caller} is not the platform operator")
        return platform

    def require_unpaused(self) -> Platform:
        platform = self.platform()
        if platform.is_paused:
            raise PlatformPausedError("Platform is paused")
        return platform

    def require_paused(self) -> Platform:
        platform = self.platform()
        if not platform.is_paused:
            raise PlatformNotPausedError("Platform must be paused for this operation")
        return platform

    def require_run(self, run_id: int) -> Run:
        ensure_u64(run_id, "run_id")
        run = self.state.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run #{run_id} does not exist")
        return run

    def initialize(self, operator: str, fee_bps: int) -> Platform:
        """Creación única de la plataforma; quien la crea es el operador."""
        if self.state.platform is not None:
            raise AlreadyDoneError("Platform is already initialized")
        if not operator:
            raise OutOfRangeError("operator identity is required")
        self._validate_fee(fee_bps)

        self.state.platform = Platform(operator=operator, fee_bps=fee_bps)
        logger.info(
            "[PLATFORM] Initialized by %s with %.2f%% fee", operator, fee_bps / 100
        )
        return self.state.platform

    def set_fee_rate(self, caller: str, new_bps: int) -> Platform:
        platform = self.require_operator(caller)
        self._validate_fee(new_bps)
        self.state.commit([(platform, platform.version, {"fee_bps": new_bps})])
        logger.info("[PLATFORM] Fee rate set to %s bps", new_bps)
        return platform

    def _validate_fee(self, fee_bps: int) -> None:
        if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
            raise OutOfRangeError("fee_bps must be an integer")
        if not 0 <= fee_bps <= self.config.MAX_FEE_BPS:
            raise OutOfRangeError(
                f"fee_bps {fee_bps} outside [0, {self.config.MAX_FEE_BPS}]"
            )


# =============================================================================
# EMERGENCY CONTROL
# =============================================================================

@dataclass
class EmergencyRequest:
    """Solicitud pendiente de retiro de emergencia (fase 1 del timelock)."""
    run_id: int
    amount: int
    destination: str
    requested_at: float
    requested_by: str

    def executable_at(self, delay: int) -> float:
        return self.requested_at + delay


class EmergencyControl:
    """Pausa global y escape de fondos con capacidad restringida."""

    def __init__(
        self,
        state: PoolState,
        custody: CustodyBackend,
        ledger: TreasuryLedger,
        access: AccessControl,
        config: PoolConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.custody = custody
        self.ledger = ledger
        self.access = access
        self.config = config
        self._clock = clock
        self.pending_requests: Dict[int, EmergencyRequest] = {}

    def pause(self, caller: str) -> Platform:
        platform = self.access.require_operator(caller)
        if platform.is_paused:
            raise AlreadyDoneError("Platform is already paused")
        self.state.commit([(platform, platform.version, {"is_paused": True})])
        logger.warning("[EMERGENCY] Platform paused by %s", caller)
        return platform

    def resume(self, caller: str) -> Platform:
        platform = self.access.require_operator(caller)
        if not platform.is_paused:
            raise AlreadyDoneError("Platform is not paused")
        self.state.commit([(platform, platform.version, {"is_paused": False})])
        # Una reanudación invalida cualquier solicitud pendiente
        self.pending_requests.clear()
        logger.warning("[EMERGENCY] Platform resumed by %s", caller)
        return platform

    def request_emergency_withdraw(
        self, caller: str, run_id: int, amount: int, destination: str
    ) -> EmergencyRequest:
        self.access.require_operator(caller)
        self.access.require_paused()
        run = self.access.require_run(run_id)
        self._validate_amount(run, amount, destination)

        request = EmergencyRequest(
            run_id=run_id,
            amount=amount,
            destination=destination,
            requested_at=self._clock(),
            requested_by=caller,
        )
        self.pending_requests[run_id] = request
        logger.warning(
            "[EMERGENCY] Withdrawal of %s from run #%s requested, executable at %s",
            amount, run_id, request.executable_at(self.config.EMERGENCY_TIMELOCK_SECONDS),
        )
        return request

    def cancel_emergency_withdraw(self, caller: str, run_id: int) -> EmergencyRequest:
        self.access.require_operator(caller)
        request = self.pending_requests.pop(run_id, None)
        if request is None:
            raise InvalidStateError(f"No pending emergency request for run #{run_id}")
        logger.warning("[EMERGENCY] Request for run #%s cancelled by %s", run_id, caller)
        return request

    def emergency_withdraw(
        self, caller: str, run_id: int, amount: int, destination: str
    ) -> Run:
        self.access.require_operator(caller)
        self.access.require_paused()
        run = self.access.require_run(run_id)
        self._validate_amount(run, amount, destination)

        delay = self.config.EMERGENCY_TIMELOCK_SECONDS
        if delay > 0:
            self._check_timelock(run_id, amount, destination, delay)

        new_total = checked_add(run.emergency_withdrawn, amount)
        transfer_and_commit(
            self.custody,
            self.state,
            run.vault,
            destination,
            amount,
            [(run, run.version, {"emergency_withdrawn": new_total})],
        )
        self.pending_requests.pop(run_id, None)

        self.ledger.record(
            EntryType.EMERGENCY_WITHDRAWAL,
            run.vault,
            destination,
            amount,
            run_id=run_id,
            actor=caller,
        )
        logger.critical(
            "[EMERGENCY] Withdrew %s from run #%s to %s", amount, run_id, destination
        )
        return run

    def _validate_amount(self, run: Run, amount: int, destination: str) -> None:
        ensure_u64(amount, "amount")
        if amount == 0:
            raise OutOfRangeError("emergency amount must be positive")
        if not destination:
            raise OutOfRangeError("destination is required")
        if is_reserved_account(destination):
            raise OutOfRangeError(f"{destination} is a reserved custody account")
        available = self.custody.balance_of(run.vault)
        if amount > available:
            raise InsufficientFundsError(
                f"Run #{run.run_id} vault holds {available}, requested {amount}"
            )

    def _check_timelock(
        self, run_id: int, amount: int, destination: str, delay: int
    ) -> None:
        request: Optional[EmergencyRequest] = self.pending_requests.get(run_id)
        if request is None:
            raise InvalidStateError(
                f"Emergency withdrawal for run #{run_id} requires a prior request"
            )
        if request.amount != amount or request.destination != destination:
            raise InvalidStateError("Emergency withdrawal does not match the pending request")
        if self._clock() < request.executable_at(delay):
            raise InvalidStateError(
                f"Emergency timelock active until {request.executable_at(delay)}"
            )
