"""
=============================================================================
INSTINCT POOL - Libro Mayor del Treasury y Auditoría de Integridad
=============================================================================
Cada movimiento de fondos (depósito, fee, retiro, retiro de fees, retiro de
emergencia) genera una entrada inmutable encadenada por hash con la anterior.
Si alguien edita una entrada pasada, la cadena se rompe.

La auditoría recalcula los invariantes de cada run y reporta el "drift"
(la diferencia entre lo esperado y lo que realmente está en custodia).
=============================================================================
"""

import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .ledger_types import Participation, Platform, Run, RunStatus


logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"


class EntryType(str, Enum):
    """Tipos de movimiento registrados en el Treasury."""
    DEPOSIT = "DEPOSIT"                          # Billetera -> vault
    PLATFORM_FEE = "PLATFORM_FEE"                # Vault -> cuenta de fees
    WITHDRAWAL = "WITHDRAWAL"                    # Vault -> billetera
    FEE_WITHDRAWAL = "FEE_WITHDRAWAL"            # Cuenta de fees -> destino
    EMERGENCY_WITHDRAWAL = "EMERGENCY_WITHDRAWAL"  # Vault -> destino (fuera de contabilidad)


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    CRITICAL_MISMATCH = "CRITICAL_MISMATCH"


# =============================================================================
# ENTRADAS DEL LEDGER
# =============================================================================

@dataclass
class TreasuryEntry:
    """Entrada inmutable del libro mayor."""
    sequence: int
    entry_type: EntryType
    source: str
    destination: str
    amount: int
    timestamp: float
    run_id: Optional[int] = None
    actor: Optional[str] = None
    previous_hash: str = GENESIS_HASH
    entry_hash: str = ""

    @property
    def entry_id(self) -> str:
        return f"TRE-{self.sequence:08d}"

    def compute_entry_hash(self) -> str:
        """Calcula el hash de la entrada vinculándola con la anterior."""
        data = {
            "sequence": self.sequence,
            "entry_type": self.entry_type.value,
            "source": self.source,
            "destination": self.destination,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
            "run_id": self.run_id,
            "actor": self.actor,
            "previous_hash": self.previous_hash,
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["entry_type"] = self.entry_type.value
        data["entry_id"] = self.entry_id
        return data


class TreasuryLedger:
    """
    Libro Mayor de movimientos con cadena de integridad.
    Solo admite agregar entradas; nunca editar ni borrar.
    """

    def __init__(self, clock=time.time):
        self.entries: List[TreasuryEntry] = []
        self._clock = clock

    @property
    def head_hash(self) -> str:
        return self.entries[-1].entry_hash if self.entries else GENESIS_HASH

    def record(
        self,
        entry_type: EntryType,
        source: str,
        destination: str,
        amount: int,
        run_id: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> TreasuryEntry:
        entry = TreasuryEntry(
            sequence=len(self.entries) + 1,
            entry_type=entry_type,
            source=source,
            destination=destination,
            amount=amount,
            timestamp=self._clock(),
            run_id=run_id,
            actor=actor,
            previous_hash=self.head_hash,
        )
        entry.entry_hash = entry.compute_entry_hash()
        self.entries.append(entry)

        logger.info(
            "[LEDGER] %s %s: %s -> %s %s",
            entry.entry_id, entry_type.value, source, destination, amount,
        )
        return entry

    def restore(self, entries: List[TreasuryEntry]) -> None:
        """Carga entradas persistidas (se verifican con verify_chain)."""
        self.entries = sorted(entries, key=lambda e: e.sequence)

    def verify_chain(self) -> Dict[str, Any]:
        """
        Recalcula la cadena completa y detecta anomalías.
        """
        previous = GENESIS_HASH
        broken: List[str] = []

        for index, entry in enumerate(self.entries, start=1):
            if (
                entry.sequence != index
                or entry.previous_hash != previous
                or entry.compute_entry_hash() != entry.entry_hash
            ):
                broken.append(entry.entry_id)
            previous = entry.entry_hash

        return {
            "total_entries_verified": len(self.entries),
            "broken_entries": broken,
            "head_hash": self.head_hash,
            "integrity_status": "OK" if not broken else "ALERT",
        }

    def totals_by_type(self, run_id: Optional[int] = None) -> Dict[str, int]:
        totals = {entry_type.value: 0 for entry_type in EntryType}
        for entry in self.entries:
            if run_id is not None and entry.run_id != run_id:
                continue
            totals[entry.entry_type.value] += entry.amount
        return totals

    def get_treasury_summary(self) -> Dict[str, Any]:
        """Retorna resumen del Treasury."""
        return {
            "total_entries": len(self.entries),
            "totals": self.totals_by_type(),
            "head_hash": self.head_hash,
            "last_entry": self.entries[-1].entry_id if self.entries else None,
        }


# =============================================================================
# AUDITORÍA DE INTEGRIDAD
# =============================================================================

@dataclass
class AuditReport:
    """Resultado de un checkpoint de integridad."""
    subject: str
    status: AuditStatus
    custody_balance: int
    expected_balance: int
    drift: int
    violations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def audit_run(
    run: Run,
    participations: List[Participation],
    custody_balance: int,
) -> AuditReport:
    """
    Verifica todos los invariantes de un run contra el balance real en custodia.
    """
    violations: List[str] = []

    deposit_sum = sum(p.deposit_amount for p in participations)
    if run.total_deposited != deposit_sum:
        violations.append(
            f"total_deposited {run.total_deposited} != sum of deposits {deposit_sum}"
        )

    if len(participations) != run.participant_count:
        violations.append(
            f"participant_count {run.participant_count} != records {len(participations)}"
        )

    withdrawn_records = sum(1 for p in participations if p.withdrawn)
    if withdrawn_records != run.withdrawn_count:
        violations.append(
            f"withdrawn_count {run.withdrawn_count} != withdrawn records {withdrawn_records}"
        )
    if run.withdrawn_count > run.participant_count:
        violations.append("withdrawn_count exceeds participant_count")

    if run.status == RunStatus.SETTLED:
        # final_balance ya descuenta lo retirado por emergencia antes de liquidar
        after_settlement = run.emergency_withdrawn - run.emergency_at_settlement
        expected = run.final_balance - run.total_withdrawn - after_settlement
        if run.total_withdrawn > run.final_balance:
            violations.append(
                f"total_withdrawn {run.total_withdrawn} exceeds final_balance {run.final_balance}"
            )
        if run.fee_amount > run.gross_profit:
            violations.append(
                f"fee_amount {run.fee_amount} exceeds gross profit {run.gross_profit}"
            )
        paid = sum(p.final_share for p in participations if p.withdrawn)
        if paid != run.total_withdrawn:
            violations.append(f"sum of final shares {paid} != total_withdrawn {run.total_withdrawn}")
    else:
        expected = run.total_deposited - run.emergency_withdrawn

    drift = custody_balance - expected
    if drift != 0:
        violations.append(f"custody drift {drift}")

    report = AuditReport(
        subject=f"run:{run.run_id}",
        status=AuditStatus.SUCCESS if not violations else AuditStatus.CRITICAL_MISMATCH,
        custody_balance=custody_balance,
        expected_balance=expected,
        drift=drift,
        violations=violations,
    )
    if violations:
        logger.error("[AUDIT] Run #%s CRITICAL_MISMATCH: %s", run.run_id, violations)
    return report


def audit_platform(
    platform: Platform,
    fee_account_balance: int,
    ledger: TreasuryLedger,
) -> AuditReport:
    """
    Concilia la cuenta de fees con el contador acumulado y verifica la cadena.
    """
    violations: List[str] = []
    expected = platform.total_fees_collected - platform.fees_withdrawn
    drift = fee_account_balance - expected
    if drift != 0:
        violations.append(f"fee account drift {drift}")

    totals = ledger.totals_by_type()
    if totals[EntryType.PLATFORM_FEE.value] != platform.total_fees_collected:
        violations.append("ledger fee total does not match total_fees_collected")
    if totals[EntryType.FEE_WITHDRAWAL.value] != platform.fees_withdrawn:
        violations.append("ledger fee withdrawals do not match fees_withdrawn")

    chain = ledger.verify_chain()
    if chain["integrity_status"] != "OK":
        violations.append(f"broken ledger entries: {chain['broken_entries']}")

    return AuditReport(
        subject="platform",
        status=AuditStatus.SUCCESS if not violations else AuditStatus.CRITICAL_MISMATCH,
        custody_balance=fee_account_balance,
        expected_balance=expected,
        drift=drift,
        violations=violations,
    )
