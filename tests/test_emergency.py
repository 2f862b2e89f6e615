import pytest

from conftest import OPERATOR, USDC, FakeClock, PoolDriver
from instinct_pool.app.config import PoolConfig
from instinct_pool.app.custody import InMemoryCustody
from instinct_pool.app.engine import PoolEngine
from instinct_pool.app.errors import (
    AlreadyDoneError,
    AuthorizationError,
    InsufficientFundsError,
    InvalidStateError,
    OutOfRangeError,
    PlatformNotPausedError,
)
from instinct_pool.app.ledger_types import RunStatus
from instinct_pool.app.treasury_ledger import AuditStatus, EntryType


@pytest.fixture
def funded_run(driver):
    driver.open_run()
    driver.join_all(1, {"alice": 100 * USDC, "bob": 100 * USDC})
    return driver.engine.get_run(1)


def test_pause_and_resume_toggle_flag(engine):
    assert engine.pause(OPERATOR).is_paused
    with pytest.raises(AlreadyDoneError):
        engine.pause(OPERATOR)
    assert not engine.resume(OPERATOR).is_paused
    with pytest.raises(AlreadyDoneError):
        engine.resume(OPERATOR)


def test_pause_does_not_freeze_settlement_or_withdrawal(engine, driver, funded_run):
    driver.start()
    engine.pause(OPERATOR)
    driver.settle(final_balance=200 * USDC)
    assert engine.get_run(1).status == RunStatus.SETTLED

    assert engine.withdraw("alice", 1).payout == 100 * USDC
    assert engine.withdraw("bob", 1).payout == 100 * USDC


def test_emergency_withdraw_requires_pause(engine, funded_run):
    with pytest.raises(PlatformNotPausedError):
        engine.emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")


def test_emergency_withdraw_requires_operator(engine, funded_run):
    engine.pause(OPERATOR)
    with pytest.raises(AuthorizationError):
        engine.emergency_withdraw("mallory", 1, 10 * USDC, "mallory")


def test_emergency_withdraw_moves_funds_and_is_recorded(engine, funded_run):
    engine.pause(OPERATOR)
    run = engine.emergency_withdraw(OPERATOR, 1, 150 * USDC, "safe")

    assert run.emergency_withdrawn == 150 * USDC
    assert engine.custody.balance_of("safe") == 150 * USDC
    assert engine.custody_balance(1) == 50 * USDC
    entry = engine.ledger.entries[-1]
    assert entry.entry_type == EntryType.EMERGENCY_WITHDRAWAL
    assert entry.actor == OPERATOR
    # la auditoría conoce el escape, no hay drift
    assert engine.audit_run(1).status == AuditStatus.SUCCESS


@pytest.mark.parametrize("amount,destination,error", [
    (0, "safe", OutOfRangeError),
    (201 * USDC, "safe", InsufficientFundsError),
    (10 * USDC, "", OutOfRangeError),
    (10 * USDC, "vault:2", OutOfRangeError),
    (10 * USDC, "platform:fees", OutOfRangeError),
])
def test_emergency_withdraw_validation(engine, funded_run, amount, destination, error):
    engine.pause(OPERATOR)
    with pytest.raises(error):
        engine.emergency_withdraw(OPERATOR, 1, amount, destination)
    assert funded_run.emergency_withdrawn == 0
    assert engine.custody_balance(1) == 200 * USDC


@pytest.fixture
def timelocked():
    clock = FakeClock()
    engine = PoolEngine(
        config=PoolConfig(EMERGENCY_TIMELOCK_SECONDS=3600),
        custody=InMemoryCustody(),
        clock=clock,
    )
    engine.create_platform(OPERATOR)
    driver = PoolDriver(engine, clock)
    driver.open_run()
    driver.join_all(1, {"alice": 100 * USDC, "bob": 100 * USDC})
    engine.pause(OPERATOR)
    return driver


def test_timelock_requires_prior_request(timelocked):
    with pytest.raises(InvalidStateError):
        timelocked.engine.emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")


def test_timelock_enforces_delay(timelocked):
    engine = timelocked.engine
    request = engine.request_emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")
    assert request.executable_at(3600) == timelocked.clock() + 3600

    timelocked.clock.advance(3599)
    with pytest.raises(InvalidStateError):
        engine.emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")

    timelocked.clock.advance(1)
    engine.emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")
    assert engine.custody.balance_of("safe") == 10 * USDC
    assert engine.emergency.pending_requests == {}


def test_timelock_execution_must_match_request(timelocked):
    engine = timelocked.engine
    engine.request_emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")
    timelocked.clock.advance(3600)
    with pytest.raises(InvalidStateError):
        engine.emergency_withdraw(OPERATOR, 1, 20 * USDC, "safe")
    with pytest.raises(InvalidStateError):
        engine.emergency_withdraw(OPERATOR, 1, 10 * USDC, "elsewhere")


def test_cancel_and_resume_drop_pending_requests(timelocked):
    engine = timelocked.engine
    engine.request_emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")
    engine.cancel_emergency_withdraw(OPERATOR, 1)
    with pytest.raises(InvalidStateError):
        engine.cancel_emergency_withdraw(OPERATOR, 1)

    engine.request_emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")
    engine.resume(OPERATOR)
    engine.pause(OPERATOR)
    timelocked.clock.advance(3600)
    with pytest.raises(InvalidStateError):
        engine.emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")


def test_emergency_withdraw_before_settlement_still_reconciles(engine, driver, funded_run):
    driver.start()
    engine.pause(OPERATOR)
    engine.emergency_withdraw(OPERATOR, 1, 50 * USDC, "safe")
    engine.resume(OPERATOR)

    breakdown = driver.settle()
    run = engine.get_run(1)
    assert breakdown.distributable == 150 * USDC
    assert run.emergency_at_settlement == 50 * USDC

    report = engine.audit_run(1)
    assert report.status == AuditStatus.SUCCESS
    assert report.expected_balance == 150 * USDC
    assert report.drift == 0

    driver.withdraw_all(1, ["alice", "bob"])
    assert engine.audit_run(1).status == AuditStatus.SUCCESS


def test_emergency_withdraw_after_settlement_still_reconciles(engine, driver, funded_run):
    driver.start()
    driver.settle(final_balance=200 * USDC)
    engine.pause(OPERATOR)
    engine.emergency_withdraw(OPERATOR, 1, 40 * USDC, "safe")

    run = engine.get_run(1)
    assert run.emergency_at_settlement == 0
    assert run.emergency_withdrawn == 40 * USDC
    report = engine.audit_run(1)
    assert report.status == AuditStatus.SUCCESS
    assert report.expected_balance == 160 * USDC


def test_rollback_restores_pending_requests_and_balances(timelocked):
    engine = timelocked.engine
    checkpoint = engine.checkpoint()
    engine.request_emergency_withdraw(OPERATOR, 1, 10 * USDC, "safe")
    engine.custody.mint("safe", 1 * USDC)

    engine.rollback(checkpoint)
    assert engine.emergency.pending_requests == {}
    assert engine.custody.balance_of("safe") == 0
    assert engine.custody_balance(1) == 200 * USDC
    assert engine.deposits.state is engine.state
