"""
=============================================================================
INSTINCT POOL - Liquidación: Fee de Plataforma y Distribución de Retiros
=============================================================================
SettlementCalculator extrae el fee de la plataforma sobre la ganancia
realizada. WithdrawalDistributor calcula el pago exacto de cada participante
(parte base + bono por aciertos) y elimina el polvo de redondeo.

Reglas NO NEGOCIABLES:
- Sin fee sobre una pérdida
- El bono se aplica SOLO a la parte de ganancia, nunca al principal;
  aplicarlo a la parte base hace que la suma de derechos exceda el balance
- Ningún bono en un run con pérdida o en equilibrio
- El último en retirar recibe el balance literal restante (sin polvo)
=============================================================================
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from .access_control import AccessControl
from .checked_math import checked_add, checked_sub, ensure_u64, mul_div_floor
from .config import PoolConfig
from .custody import CustodyBackend, transfer_and_commit
from .errors import (
    AlreadyWithdrawnError,
    InsufficientFundsError,
    OutOfRangeError,
    ParticipationNotFoundError,
    RunNotSettledError,
)
from .ledger_types import (
    Participation,
    Platform,
    PoolState,
    Run,
    RunStatus,
    is_reserved_account,
    wallet_account,
)
from .treasury_ledger import EntryType, TreasuryLedger


logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10000


# =============================================================================
# FEE DE PLATAFORMA
# =============================================================================

@dataclass
class FeeBreakdown:
    """Resultado del cálculo de fee al cerrar un run."""
    total_deposited: int
    reported_balance: int
    profit: int
    fee_bps: int
    fee: int
    distributable: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_deposited": self.total_deposited,
            "reported_balance": self.reported_balance,
            "profit": self.profit,
            "fee_bps": self.fee_bps,
            "fee": self.fee,
            "distributable": self.distributable,
        }


class SettlementCalculator:
    """
    Calculadora del fee de plataforma.

        profit        = max(0, F - D)
        fee           = floor(profit * fee_bps / 10000)
        distributable = F - fee

    Ejemplo (D=400, F=500, 1500 bps):
        - profit: 100
        - fee: 15 -> cuenta de fees
        - distributable: 485 -> final_balance del run
    """

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

    @staticmethod
    def calculate_fee(total_deposited: int, reported_balance: int, fee_bps: int) -> FeeBreakdown:
        ensure_u64(total_deposited, "total_deposited")
        ensure_u64(reported_balance, "reported_balance")
        if not 0 <= fee_bps <= BPS_DENOMINATOR:
            raise OutOfRangeError(f"fee_bps {fee_bps} outside [0, {BPS_DENOMINATOR}]")

        profit = reported_balance - total_deposited if reported_balance > total_deposited else 0
        fee = mul_div_floor(profit, fee_bps, BPS_DENOMINATOR)
        distributable = checked_sub(reported_balance, fee)

        return FeeBreakdown(
            total_deposited=total_deposited,
            reported_balance=reported_balance,
            profit=profit,
            fee_bps=fee_bps,
            fee=fee,
            distributable=distributable,
        )

    def apply(
        self,
        run: Run,
        platform: Platform,
        reported_balance: int,
        ended_at: int,
        actor: str,
    ) -> FeeBreakdown:
        """
        Mueve el fee del vault a la cuenta de fees y cierra el run en SETTLED.
        Invocado únicamente por RunLifecycle.settle.
        """
        breakdown = self.calculate_fee(run.total_deposited, reported_balance, platform.fee_bps)

        updates = [
            (run, run.version, {
                "final_balance": breakdown.distributable,
                "fee_amount": breakdown.fee,
                "gross_profit": breakdown.profit,
                "emergency_at_settlement": run.emergency_withdrawn,
                "ended_at": ended_at,
            }),
            (platform, platform.version, {
                "total_fees_collected": checked_add(platform.total_fees_collected, breakdown.fee),
            }),
        ]
        transfer_and_commit(
            self.custody,
            self.state,
            run.vault,
            platform.fee_account,
            breakdown.fee,
            updates,
            transitions=[(run, RunStatus.SETTLED)],
        )

        if breakdown.fee > 0:
            self.ledger.record(
                EntryType.PLATFORM_FEE,
                run.vault,
                platform.fee_account,
                breakdown.fee,
                run_id=run.run_id,
                actor=actor,
            )
        return breakdown

    def withdraw_collected_fees(self, caller: str, amount: int, destination: str) -> Platform:
        """Retira fees acumulados de la cuenta de fees (solo operador)."""
        platform = self.access.require_operator(caller)
        ensure_u64(amount, "amount")
        if amount == 0:
            raise OutOfRangeError("amount must be positive")
        if not destination:
            raise OutOfRangeError("destination is required")
        if is_reserved_account(destination):
            raise OutOfRangeError(f"{destination} is a reserved custody account")

        available = self.custody.balance_of(platform.fee_account)
        if amount > available:
            raise InsufficientFundsError(
                f"Fee account holds {available}, requested {amount}",
                {"available": available},
            )

        transfer_and_commit(
            self.custody,
            self.state,
            platform.fee_account,
            destination,
            amount,
            [(platform, platform.version, {
                "fees_withdrawn": checked_add(platform.fees_withdrawn, amount),
            })],
        )
        self.ledger.record(
            EntryType.FEE_WITHDRAWAL, platform.fee_account, destination, amount, actor=caller
        )
        logger.info("[TREASURY] %s withdrew %s in fees to %s", caller, amount, destination)
        return platform


# =============================================================================
# DISTRIBUCIÓN DE RETIROS
# =============================================================================

@dataclass
class PayoutQuote:
    """Desglose del pago de un participante."""
    participant: str
    deposit: int
    base_share: int
    profit_share: int
    bonus: int
    payout: int
    is_last: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant": self.participant,
            "deposit": self.deposit,
            "base_share": self.base_share,
            "profit_share": self.profit_share,
            "bonus": self.bonus,
            "payout": self.payout,
            "is_last": self.is_last,
        }


class WithdrawalDistributor:
    """
    Calculadora de pagos por participante.

    - Parte base: floor(d * F / D)
    - Parte de ganancia: floor(d * P / D), con P = ganancia del run
    - Bono: floor(parte_ganancia * aciertos / 100), tope MAX_DECISIONS%
    - Último retiro: balance literal del vault
    """

    def __init__(
        self,
        state: PoolState,
        custody: CustodyBackend,
        ledger: TreasuryLedger,
        config: PoolConfig,
    ):
        self.state = state
        self.custody = custody
        self.ledger = ledger
        self.config = config

    def profit_basis(self, run: Run) -> int:
        """Ganancia sobre la que se calcula el bono (neta o bruta del fee)."""
        if run.final_balance <= run.total_deposited:
            return 0
        if self.config.BONUS_PROFIT_BASIS == "gross":
            return run.gross_profit
        return run.final_balance - run.total_deposited

    def compute_bonus(self, profit_share: int, correct_votes: int) -> int:
        counted = min(correct_votes, self.config.MAX_DECISIONS)
        return mul_div_floor(
            profit_share, counted * self.config.BONUS_PERCENT_PER_DECISION, 100
        )

    def quote(self, run: Run, participation: Participation) -> PayoutQuote:
        """Calcula el pago sin mover fondos ni alterar estado."""
        custody_balance = self.custody.balance_of(run.vault)
        d = participation.deposit_amount
        D = run.total_deposited
        F = run.final_balance
        is_last = run.withdrawn_count + 1 == run.participant_count

        base = mul_div_floor(d, F, D)
        profit_share = 0
        bonus = 0
        if F > D:
            profit_share = mul_div_floor(d, self.profit_basis(run), D)
            bonus = self.compute_bonus(profit_share, participation.correct_votes)

        if is_last:
            # El último absorbe el residuo de redondeo (positivo o negativo)
            payout = custody_balance
        else:
            payout = checked_add(base, bonus)
            if payout > custody_balance:
                raise InsufficientFundsError(
                    f"Payout {payout} exceeds vault balance {custody_balance}",
                    {"payout": payout, "available": custody_balance},
                )

        return PayoutQuote(
            participant=participation.participant,
            deposit=d,
            base_share=base,
            profit_share=profit_share,
            bonus=bonus,
            payout=payout,
            is_last=is_last,
        )

    def _claimable(self, run_id: int, participant: str, run: Run) -> Participation:
        if run.status != RunStatus.SETTLED:
            raise RunNotSettledError(f"Run #{run_id} is not settled yet")
        participation = self.state.get_participation(run_id, participant)
        if participation is None:
            raise ParticipationNotFoundError(
                f"{participant} has no participation in run #{run_id}"
            )
        if participation.withdrawn:
            raise AlreadyWithdrawnError(
                f"{participant} has already withdrawn from run #{run_id}"
            )
        return participation

    def preview(self, run: Run, participant: str) -> PayoutQuote:
        participation = self._claimable(run.run_id, participant, run)
        return self.quote(run, participation)

    def withdraw(self, run: Run, participant: str) -> PayoutQuote:
        """
        Paga la parte del participante.

        PROCESO ATÓMICO:
        1. Verifica SETTLED, participación existente y no retirada
        2. Calcula el pago (verificando contra el balance del vault)
        3. Transfiere vault -> billetera
        4. Actualiza totales del run y finaliza la participación
        """
        participation = self._claimable(run.run_id, participant, run)
        quote = self.quote(run, participation)

        updates = [
            (run, run.version, {
                "total_withdrawn": checked_add(run.total_withdrawn, quote.payout),
                "withdrawn_count": run.withdrawn_count + 1,
            }),
            (participation, participation.version, {
                "final_share": quote.payout,
                "withdrawn": True,
            }),
        ]
        wallet = wallet_account(participant)
        transfer_and_commit(self.custody, self.state, run.vault, wallet, quote.payout, updates)

        if quote.payout > 0:
            self.ledger.record(
                EntryType.WITHDRAWAL,
                run.vault,
                wallet,
                quote.payout,
                run_id=run.run_id,
                actor=participant,
            )
        logger.info(
            "[WITHDRAW] %s withdrew %s from run #%s (base %s, bonus %s%s)",
            participant, quote.payout, run.run_id, quote.base_share, quote.bonus,
            ", last claimant" if quote.is_last else "",
        )
        return quote
