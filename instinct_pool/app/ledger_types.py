"""
=============================================================================
INSTINCT POOL - Tipos del Ledger (Platform, Run, Participation)
=============================================================================
Modelo de datos en memoria del motor de liquidación.

Principios de Diseño:
- Direccionamiento determinístico: cada registro tiene una clave compuesta
  estable (hash con namespace), sin necesidad de escanear
- Compare-and-update: cada registro lleva `version`; toda escritura verifica
  la versión leída antes de aplicar
- El estado del run SOLO cambia a través de RunLifecycle
=============================================================================
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import InvalidRunStatusError, StaleStateError


# =============================================================================
# ENUMERACIONES
# =============================================================================

class RunStatus(str, Enum):
    """
    Máquina de Estados Finita (FSM) del ciclo de vida de un run.
    WAITING -> ACTIVE -> SETTLED (terminal). Sin saltos ni reversa.
    """
    WAITING = "WAITING"    # Aceptando depósitos
    ACTIVE = "ACTIVE"      # Trading en curso
    SETTLED = "SETTLED"    # Liquidado, listo para retiros


VALID_TRANSITIONS = {
    RunStatus.WAITING: [RunStatus.ACTIVE],
    RunStatus.ACTIVE: [RunStatus.SETTLED],
    RunStatus.SETTLED: [],
}


# =============================================================================
# CLAVES COMPUESTAS
# =============================================================================

def _namespaced_key(namespace: bytes, *parts: bytes) -> str:
    digest = hashlib.sha256(namespace)
    for part in parts:
        digest.update(part)
    return digest.hexdigest()


def platform_key() -> str:
    return _namespaced_key(b"platform")


def run_key(run_id: int) -> str:
    return _namespaced_key(b"run", run_id.to_bytes(8, "little"))


def participation_key(run_id: int, participant: str) -> str:
    return _namespaced_key(
        b"participation", run_id.to_bytes(8, "little"), participant.encode()
    )


def vault_account(run_id: int) -> str:
    """Nombre de la cuenta de custodia de un run."""
    return f"vault:{run_id}"


def wallet_account(participant: str) -> str:
    """
    Cuenta de custodia de un participante. El prefijo `wallet:` la separa
    de vaults y fees aunque el id del participante imite esos nombres.
    """
    return f"wallet:{participant}"


FEE_ACCOUNT = "platform:fees"
RESERVED_PREFIXES = ("vault:", "platform:")


def is_reserved_account(account: str) -> bool:
    return account.startswith(RESERVED_PREFIXES)


# =============================================================================
# REGISTROS
# =============================================================================

@dataclass
class Platform:
    """Instancia única de la plataforma."""
    operator: str
    fee_bps: int
    total_runs: int = 0
    is_paused: bool = False
    total_fees_collected: int = 0
    fees_withdrawn: int = 0
    fee_account: str = FEE_ACCOUNT
    version: int = 0

    @property
    def key(self) -> str:
        return platform_key()


@dataclass
class Run:
    """
    Una ronda de depósitos, trading y liquidación.

    `status` es de solo lectura: la única vía para cambiarlo es
    RunLifecycle, que llama a `_advance` con una transición válida.
    """
    run_id: int
    min_deposit: int
    max_deposit: int
    max_participants: int
    created_at: int
    total_deposited: int = 0
    total_withdrawn: int = 0
    participant_count: int = 0
    withdrawn_count: int = 0
    final_balance: int = 0
    fee_amount: int = 0
    gross_profit: int = 0
    emergency_withdrawn: int = 0
    # emergency_withdrawn al momento de liquidar; final_balance ya lo excluye
    emergency_at_settlement: int = 0
    started_at: int = 0
    ended_at: int = 0
    version: int = 0
    _status: RunStatus = field(default=RunStatus.WAITING, repr=False)

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def key(self) -> str:
        return run_key(self.run_id)

    @property
    def vault(self) -> str:
        return vault_account(self.run_id)

    def _advance(self, new_status: RunStatus) -> None:
        if new_status not in VALID_TRANSITIONS[self._status]:
            raise InvalidRunStatusError(
                f"Run #{self.run_id}: invalid transition "
                f"{self._status.value} -> {new_status.value}"
            )
        self._status = new_status

    @classmethod
    def restore(cls, status: RunStatus, **values: Any) -> "Run":
        """Reconstruye un run persistido en su estado original."""
        return cls(_status=RunStatus(status), **values)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "min_deposit": self.min_deposit,
            "max_deposit": self.max_deposit,
            "max_participants": self.max_participants,
            "total_deposited": self.total_deposited,
            "total_withdrawn": self.total_withdrawn,
            "participant_count": self.participant_count,
            "withdrawn_count": self.withdrawn_count,
            "final_balance": self.final_balance,
            "fee_amount": self.fee_amount,
            "gross_profit": self.gross_profit,
            "emergency_withdrawn": self.emergency_withdrawn,
            "emergency_at_settlement": self.emergency_at_settlement,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


@dataclass
class Participation:
    """Un participante en un run; se finaliza exactamente una vez al retirar."""
    run_id: int
    participant: str
    deposit_amount: int = 0
    correct_votes: int = 0
    total_votes: int = 0
    final_share: int = 0
    withdrawn: bool = False
    version: int = 0

    @property
    def key(self) -> str:
        return participation_key(self.run_id, self.participant)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "participant": self.participant,
            "deposit_amount": self.deposit_amount,
            "correct_votes": self.correct_votes,
            "total_votes": self.total_votes,
            "final_share": self.final_share,
            "withdrawn": self.withdrawn,
        }


# =============================================================================
# ALMACÉN DE ESTADO (compare-and-update)
# =============================================================================

Update = Tuple[Any, int, Dict[str, Any]]


class PoolState:
    """
    Almacén direccionable de registros.
    En producción el host (o la base de datos) provee exclusividad por cuenta.
    """

    def __init__(self):
        self.platform: Optional[Platform] = None
        self.runs: Dict[str, Run] = {}
        self.participations: Dict[str, Participation] = {}
        # run_key -> claves de participación en orden de llegada
        self._run_members: Dict[str, List[str]] = {}

    def get_run(self, run_id: int) -> Optional[Run]:
        return self.runs.get(run_key(run_id))

    def get_participation(self, run_id: int, participant: str) -> Optional[Participation]:
        return self.participations.get(participation_key(run_id, participant))

    def add_run(self, run: Run) -> None:
        self.runs[run.key] = run
        self._run_members.setdefault(run.key, [])

    def add_participation(self, participation: Participation) -> None:
        self.participations[participation.key] = participation
        self._run_members.setdefault(run_key(participation.run_id), []).append(
            participation.key
        )

    def participations_for(self, run_id: int) -> List[Participation]:
        keys = self._run_members.get(run_key(run_id), [])
        return [self.participations[k] for k in keys]

    @staticmethod
    def verify_versions(updates: Iterable[Update]) -> None:
        for record, expected_version, _ in updates:
            if record.version != expected_version:
                raise StaleStateError(
                    f"{type(record).__name__} {record.key[:12]} changed "
                    f"(expected v{expected_version}, found v{record.version})"
                )

    def commit(
        self,
        updates: Sequence[Update],
        transitions: Sequence[Tuple[Run, RunStatus]] = (),
    ) -> None:
        """
        Aplica un lote de actualizaciones de forma atómica.
        Primero verifica TODAS las versiones y transiciones; luego escribe.
        """
        self.verify_versions(updates)
        for run, new_status in transitions:
            if new_status not in VALID_TRANSITIONS[run.status]:
                raise InvalidRunStatusError(
                    f"Run #{run.run_id}: invalid transition "
                    f"{run.status.value} -> {new_status.value}"
                )

        for record, _, changes in updates:
            for name, value in changes.items():
                setattr(record, name, value)
            record.version += 1
        for run, new_status in transitions:
            run._advance(new_status)

    def restore_from(self, other: "PoolState") -> None:
        """Reemplaza el contenido en sitio; los componentes siguen apuntando aquí."""
        self.platform = other.platform
        self.runs = other.runs
        self.participations = other.participations
        self._run_members = other._run_members
