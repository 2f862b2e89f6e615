"""
=============================================================================
INSTINCT POOL - Persistencia Asíncrona (SQLAlchemy)
=============================================================================
Guarda y restaura el estado del motor: Platform, Runs, Participations y el
libro mayor del Treasury. Cada guardado corre en una sola transacción de
base de datos; las entradas del ledger solo se agregan, nunca se reescriben.
=============================================================================
"""

import logging
from typing import Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload

from ..models import (
    Base,
    CustodyBalanceRecord,
    ParticipationRecord,
    PlatformRecord,
    RunRecord,
    TreasuryEntryRecord,
)
from .errors import InvalidStateError
from .ledger_types import Participation, Platform, PoolState, Run, platform_key, run_key
from .treasury_ledger import TreasuryEntry, TreasuryLedger


logger = logging.getLogger(__name__)

RUN_FIELDS = (
    "min_deposit",
    "max_deposit",
    "max_participants",
    "total_deposited",
    "total_withdrawn",
    "participant_count",
    "withdrawn_count",
    "final_balance",
    "fee_amount",
    "gross_profit",
    "emergency_withdrawn",
    "emergency_at_settlement",
    "created_at",
    "started_at",
    "ended_at",
    "version",
)

PARTICIPATION_FIELDS = (
    "deposit_amount",
    "correct_votes",
    "total_votes",
    "final_share",
    "withdrawn",
    "version",
)

PLATFORM_FIELDS = (
    "operator",
    "fee_bps",
    "total_runs",
    "is_paused",
    "total_fees_collected",
    "fees_withdrawn",
    "fee_account",
    "version",
)


def create_session_factory(database_url: str) -> Tuple[AsyncEngine, async_sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class PoolRepository:
    """Guarda y restaura el estado completo del motor."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def save_state(
        self,
        state: PoolState,
        ledger: TreasuryLedger,
        balances: Optional[Dict[str, int]] = None,
    ) -> None:
        """
        Persiste el estado actual en una sola transacción.
        `balances` solo se pasa con la custodia en memoria del servicio.
        """
        async with self.session_factory() as session:
            async with session.begin():
                if state.platform is not None:
                    await self._save_platform(session, state.platform)
                for run in state.runs.values():
                    await self._save_run(session, run)
                    for order, participation in enumerate(state.participations_for(run.run_id)):
                        await self._save_participation(session, participation, order)
                await self._append_entries(session, ledger)
                if balances is not None:
                    for account, balance in balances.items():
                        await session.merge(CustodyBalanceRecord(account=account, balance=balance))

        logger.debug(
            "[DB] Saved %s runs, %s participations, %s ledger entries",
            len(state.runs), len(state.participations), len(ledger.entries),
        )

    async def _save_platform(self, session, platform: Platform) -> None:
        record = await session.get(PlatformRecord, platform_key())
        if record is None:
            record = PlatformRecord(record_key=platform_key())
            session.add(record)
        for name in PLATFORM_FIELDS:
            setattr(record, name, getattr(platform, name))

    async def _save_run(self, session, run: Run) -> None:
        record = await session.get(RunRecord, run.key)
        if record is None:
            record = RunRecord(record_key=run.key, run_id=str(run.run_id))
            session.add(record)
        elif record.version == run.version:
            return
        record.status = run.status
        for name in RUN_FIELDS:
            setattr(record, name, getattr(run, name))

    async def _save_participation(self, session, participation: Participation, order: int) -> None:
        record = await session.get(ParticipationRecord, participation.key)
        if record is None:
            record = ParticipationRecord(
                record_key=participation.key,
                run_key=run_key(participation.run_id),
                participant=participation.participant,
                join_order=order,
            )
            session.add(record)
        elif record.version == participation.version:
            return
        for name in PARTICIPATION_FIELDS:
            setattr(record, name, getattr(participation, name))

    async def _append_entries(self, session, ledger: TreasuryLedger) -> None:
        result = await session.execute(select(func.max(TreasuryEntryRecord.sequence)))
        last_sequence = result.scalar() or 0
        for entry in ledger.entries[last_sequence:]:
            session.add(TreasuryEntryRecord(
                sequence=entry.sequence,
                entry_type=entry.entry_type,
                run_id=str(entry.run_id) if entry.run_id is not None else None,
                source=entry.source,
                destination=entry.destination,
                amount=entry.amount,
                actor=entry.actor,
                timestamp=entry.timestamp,
                entry_hash=entry.entry_hash,
                previous_hash=entry.previous_hash,
            ))

    async def load_state(self) -> Tuple[PoolState, TreasuryLedger]:
        """
        Restaura el estado persistido.

        Si un run fue alterado directamente en la BD (state_hash inválido),
        la carga se rechaza.
        """
        state = PoolState()
        ledger = TreasuryLedger()

        async with self.session_factory() as session:
            platform_record = await session.get(PlatformRecord, platform_key())
            if platform_record is not None:
                state.platform = Platform(
                    **{name: getattr(platform_record, name) for name in PLATFORM_FIELDS}
                )

            result = await session.execute(
                select(RunRecord).options(selectinload(RunRecord.participations))
            )
            for record in result.scalars().all():
                if not record.verify_state_integrity():
                    logger.critical("[DB] Run %s failed state hash verification", record.run_id)
                    raise InvalidStateError(
                        f"Run #{record.run_id} failed integrity verification"
                    )
                run = Run.restore(
                    record.status,
                    run_id=int(record.run_id),
                    **{name: getattr(record, name) for name in RUN_FIELDS},
                )
                state.add_run(run)
                for p in sorted(record.participations, key=lambda item: item.join_order):
                    state.add_participation(Participation(
                        run_id=run.run_id,
                        participant=p.participant,
                        **{name: getattr(p, name) for name in PARTICIPATION_FIELDS},
                    ))

            entries = await session.execute(
                select(TreasuryEntryRecord).order_by(TreasuryEntryRecord.sequence)
            )
            ledger.restore([
                TreasuryEntry(
                    sequence=row.sequence,
                    entry_type=row.entry_type,
                    source=row.source,
                    destination=row.destination,
                    amount=row.amount,
                    timestamp=row.timestamp,
                    run_id=int(row.run_id) if row.run_id is not None else None,
                    actor=row.actor,
                    previous_hash=row.previous_hash,
                    entry_hash=row.entry_hash,
                )
                for row in entries.scalars().all()
            ])

        logger.info(
            "[DB] Loaded %s runs and %s ledger entries", len(state.runs), len(ledger.entries)
        )
        return state, ledger

    async def load_balances(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            result = await session.execute(select(CustodyBalanceRecord))
            return {row.account: row.balance for row in result.scalars().all()}
