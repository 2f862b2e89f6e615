"""
=============================================================================
INSTINCT POOL - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Persistencia del motor: un registro de Platform, un registro por Run y uno
por cada par (run, participante), todos direccionados por una clave compuesta
estable (hash con namespace), más el libro mayor del Treasury encadenado.

Principios de Diseño:
- Direccionamiento determinístico: la clave primaria ES la clave compuesta
- Integridad: state_hash SHA-256 detecta ediciones directas en la BD
- Montos exactos: unidades base u64 guardadas sin pérdida de precisión
=============================================================================
"""

import hashlib
import secrets
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
    event,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .app.ledger_types import RunStatus
from .app.treasury_ledger import EntryType


# =============================================================================
# TIPOS PERSONALIZADOS
# =============================================================================

class TokenAmount(TypeDecorator):
    """
    Monto u64 en unidades base.
    Se guarda como texto decimal: ningún dialecto redondea ni trunca.
    """
    impl = String(20)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: PLATFORMS (Instancia Única)
# =============================================================================

class PlatformRecord(Base):
    """Configuración y contadores globales de la plataforma."""
    __tablename__ = "platforms"

    record_key: Mapped[str] = mapped_column(String(64), primary_key=True)

    operator: Mapped[str] = mapped_column(String(255), nullable=False)
    fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    total_runs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # ==========================================================================
    # TREASURY
    # ==========================================================================
    total_fees_collected: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    fees_withdrawn: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    fee_account: Mapped[str] = mapped_column(String(255), nullable=False)

    # Versión para control de concurrencia optimista
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    __table_args__ = (
        CheckConstraint("fee_bps >= 0 AND fee_bps <= 10000", name="check_fee_bps_range"),
    )


# =============================================================================
# TABLA: RUNS (Rondas de Trading)
# =============================================================================

class RunRecord(Base):
    """
    Registro de un run con hash de estado.

    SEGURIDAD: state_hash es un SHA-256 de los contadores financieros + salt.
    Si alguien modifica un contador directamente en la BD sin recalcular el
    hash, verify_state_integrity() lo detecta.
    """
    __tablename__ = "runs"

    record_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)

    # ==========================================================================
    # ESTADO DEL RUN (FSM)
    # ==========================================================================
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus),
        default=RunStatus.WAITING,
        nullable=False
    )

    # Límites de depósito
    min_deposit: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    max_deposit: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)

    # ==========================================================================
    # CONTADORES FINANCIEROS (NO NEGOCIABLE)
    # ==========================================================================
    total_deposited: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    total_withdrawn: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    participant_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    withdrawn_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    final_balance: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    fee_amount: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    gross_profit: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    emergency_withdrawn: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    emergency_at_settlement: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)

    # Hash de integridad
    # Fórmula: SHA256(record_key + status + contadores + salt)
    state_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    state_salt: Mapped[str] = mapped_column(String(32), nullable=False)

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Timestamps (unix, segundos)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ended_at: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relaciones
    participations: Mapped[List["ParticipationRecord"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_runs_status", "status"),
        CheckConstraint("participant_count >= 0", name="check_participant_count"),
        CheckConstraint("withdrawn_count <= participant_count", name="check_withdrawn_count"),
        CheckConstraint("max_participants >= 2", name="check_max_participants"),
    )

    def compute_state_hash(self) -> str:
        """
        Calcula el hash SHA-256 del estado financiero del run.
        CRÍTICO: debe recalcularse SIEMPRE que cambie un contador.
        """
        status = self.status.value if isinstance(self.status, RunStatus) else self.status
        hash_input = ":".join(str(part) for part in (
            self.record_key,
            status,
            self.total_deposited,
            self.total_withdrawn,
            self.participant_count,
            self.withdrawn_count,
            self.final_balance,
            self.fee_amount,
            self.emergency_withdrawn,
            self.emergency_at_settlement,
            self.state_salt,
        ))
        return hashlib.sha256(hash_input.encode()).hexdigest()

    def verify_state_integrity(self) -> bool:
        """Retorna False si el registro fue alterado fuera del motor."""
        return secrets.compare_digest(self.state_hash, self.compute_state_hash())

    @staticmethod
    def generate_state_salt() -> str:
        return secrets.token_hex(16)


# =============================================================================
# TABLA: PARTICIPATIONS (Participantes por Run)
# =============================================================================

class ParticipationRecord(Base):
    """Un participante en un run, direccionado por (run, participante)."""
    __tablename__ = "participations"

    record_key: Mapped[str] = mapped_column(String(64), primary_key=True)

    run_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("runs.record_key", ondelete="CASCADE"),
        nullable=False
    )
    participant: Mapped[str] = mapped_column(String(255), nullable=False)

    # Orden de llegada (primer depósito)
    join_order: Mapped[int] = mapped_column(Integer, nullable=False)

    deposit_amount: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    correct_votes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_votes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    final_share: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)
    withdrawn: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    run: Mapped["RunRecord"] = relationship(back_populates="participations")

    __table_args__ = (
        Index("idx_participation_run", "run_key"),
        CheckConstraint("correct_votes <= total_votes", name="check_votes_order"),
        CheckConstraint("correct_votes >= 0", name="check_votes_positive"),
    )


# =============================================================================
# TABLA: TREASURY_ENTRIES (Libro Mayor Encadenado)
# =============================================================================

class TreasuryEntryRecord(Base):
    """
    Entrada inmutable del libro mayor.
    Fórmula: SHA256(previous_hash + campos de la entrada)
    """
    __tablename__ = "treasury_entries"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    entry_type: Mapped[EntryType] = mapped_column(Enum(EntryType), nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    source: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[float] = mapped_column(Float, nullable=False)

    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("idx_treasury_run", "run_id"),
        Index("idx_treasury_type", "entry_type"),
    )


# =============================================================================
# TABLA: CUSTODY_BALANCES (Custodia de Desarrollo)
# =============================================================================

class CustodyBalanceRecord(Base):
    """Balance de una cuenta de la custodia en memoria (servicio de desarrollo)."""
    __tablename__ = "custody_balances"

    account: Mapped[str] = mapped_column(String(255), primary_key=True)
    balance: Mapped[int] = mapped_column(TokenAmount, default=0, nullable=False)


# =============================================================================
# EVENT LISTENERS PARA INTEGRIDAD AUTOMÁTICA
# =============================================================================

@event.listens_for(RunRecord, "before_insert")
def run_before_insert(mapper, connection, target: RunRecord):
    """Genera el salt y hash inicial del estado antes de insertar."""
    if not target.state_salt:
        target.state_salt = RunRecord.generate_state_salt()
    target.state_hash = target.compute_state_hash()


@event.listens_for(RunRecord, "before_update")
def run_before_update(mapper, connection, target: RunRecord):
    """Recalcula el hash del estado al modificar."""
    target.state_hash = target.compute_state_hash()
