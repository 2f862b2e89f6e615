"""Shared fixtures: deterministic clock, in-memory custody and a run driver."""

from typing import Dict, Iterable, Optional

import pytest

from instinct_pool.app.config import PoolConfig
from instinct_pool.app.custody import InMemoryCustody
from instinct_pool.app.engine import PoolEngine
from instinct_pool.app.ledger_types import wallet_account
from instinct_pool.app.settlement import FeeBreakdown


OPERATOR = "operator"
USDC = 1_000_000


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class PoolDriver:
    """Walks runs through their lifecycle with funded wallets."""

    def __init__(self, engine: PoolEngine, clock: FakeClock):
        self.engine = engine
        self.clock = clock

    @property
    def custody(self) -> InMemoryCustody:
        return self.engine.custody

    def open_run(
        self,
        run_id: int = 1,
        min_deposit: int = 1 * USDC,
        max_deposit: int = 1_000 * USDC,
        max_participants: int = 100,
    ):
        return self.engine.create_run(OPERATOR, run_id, min_deposit, max_deposit, max_participants)

    def join(self, run_id: int, participant: str, amount: int):
        self.custody.mint(wallet_account(participant), amount)
        return self.engine.deposit(participant, run_id, amount)

    def join_all(self, run_id: int, deposits: Dict[str, int]) -> None:
        for participant, amount in deposits.items():
            self.join(run_id, participant, amount)

    def start(self, run_id: int = 1):
        return self.engine.start_run(OPERATOR, run_id)

    def record_votes(self, run_id: int, correct: Dict[str, int], total: int = 12) -> None:
        for participant, count in correct.items():
            self.engine.record_decision_outcome(OPERATOR, run_id, participant, count, total)

    def settle(self, run_id: int = 1, final_balance: Optional[int] = None) -> FeeBreakdown:
        """Lleva el vault al balance final (resultado del trading) y liquida."""
        run = self.engine.get_run(run_id)
        vault_balance = self.custody.balance_of(run.vault)
        if final_balance is None:
            final_balance = vault_balance
        if final_balance > vault_balance:
            self.custody.mint(run.vault, final_balance - vault_balance)
        elif final_balance < vault_balance:
            self.custody.burn(run.vault, vault_balance - final_balance)
        self.clock.advance(self.engine.config.MIN_RUN_DURATION_SECONDS)
        return self.engine.settle_run(OPERATOR, run_id, final_balance)

    def withdraw_all(self, run_id: int, order: Iterable[str]) -> Dict[str, int]:
        return {p: self.engine.withdraw(p, run_id).payout for p in order}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> PoolConfig:
    return PoolConfig()


@pytest.fixture
def bare_engine(config, clock) -> PoolEngine:
    return PoolEngine(config=config, custody=InMemoryCustody(), clock=clock)


@pytest.fixture
def engine(bare_engine) -> PoolEngine:
    bare_engine.create_platform(OPERATOR, fee_bps=1500)
    return bare_engine


@pytest.fixture
def driver(engine, clock) -> PoolDriver:
    return PoolDriver(engine, clock)
