"""
=============================================================================
INSTINCT POOL - Ledger de Depósitos
=============================================================================
Acepta aportes de participantes mientras el run está en WAITING.

FLUJO:
1. Verifica pausa, estado del run, rango del monto y cupo
2. Transfiere el monto de la billetera del participante al vault del run
3. Registra el depósito (un único Participation por participante y run)

El único efecto lateral es el aumento del balance en custodia más la
contabilidad correspondiente.
=============================================================================
"""

import logging
from typing import Optional

from .access_control import AccessControl
from .checked_math import checked_add, ensure_u64
from .custody import CustodyBackend, transfer_and_commit
from .errors import InvalidRunStatusError, OutOfRangeError
from .ledger_types import Participation, PoolState, RunStatus, wallet_account
from .treasury_ledger import EntryType, TreasuryLedger


logger = logging.getLogger(__name__)


class DepositLedger:
    """Registro de aportes a un run."""

    def __init__(
        self,
        state: PoolState,
        custody: CustodyBackend,
        ledger: TreasuryLedger,
        access: AccessControl,
    ):
        self.state = state
        self.custody = custody
        self.ledger = ledger
        self.access = access

    def deposit(self, participant: str, run_id: int, amount: int) -> Participation:
        """
        Deposita `amount` unidades base en el run.

        Los depósitos repetidos del mismo participante se acumulan en su
        Participation; participant_count solo aumenta en el primero.
        """
        self.access.require_unpaused()
        run = self.access.require_run(run_id)
        ensure_u64(amount, "amount")
        if not participant:
            raise OutOfRangeError("participant identity is required")

        if run.status != RunStatus.WAITING:
            raise InvalidRunStatusError(f"Run #{run_id} is not in waiting phase")
        if amount < run.min_deposit:
            raise OutOfRangeError(
                f"Deposit {amount} below minimum {run.min_deposit}",
                {"min_deposit": run.min_deposit},
            )
        if amount > run.max_deposit:
            raise OutOfRangeError(
                f"Deposit {amount} exceeds maximum {run.max_deposit}",
                {"max_deposit": run.max_deposit},
            )

        existing: Optional[Participation] = self.state.get_participation(run_id, participant)
        if existing is None:
            if run.participant_count >= run.max_participants:
                raise OutOfRangeError(f"Run #{run_id} is full")
            cumulative = amount
        else:
            cumulative = checked_add(existing.deposit_amount, amount)
            if cumulative > run.max_deposit:
                raise OutOfRangeError(
                    f"Cumulative deposit {cumulative} exceeds maximum {run.max_deposit}",
                    {"max_deposit": run.max_deposit},
                )

        run_changes = {"total_deposited": checked_add(run.total_deposited, amount)}
        updates = []
        if existing is None:
            run_changes["participant_count"] = run.participant_count + 1
            record = Participation(run_id=run_id, participant=participant)
        else:
            record = existing
        updates.append((run, run.version, run_changes))
        updates.append((record, record.version, {"deposit_amount": cumulative}))

        wallet = wallet_account(participant)
        transfer_and_commit(self.custody, self.state, wallet, run.vault, amount, updates)
        if existing is None:
            self.state.add_participation(record)

        self.ledger.record(
            EntryType.DEPOSIT, wallet, run.vault, amount, run_id=run_id, actor=participant
        )
        logger.info(
            "[DEPOSIT] %s deposited %s to run #%s (total %s, participants %s)",
            participant, amount, run_id, run.total_deposited, run.participant_count,
        )
        return record
