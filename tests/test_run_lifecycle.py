"""WAITING -> ACTIVE -> SETTLED, sin saltos ni reversa."""

import pytest

from conftest import OPERATOR, USDC
from instinct_pool.app.errors import (
    AlreadyDoneError,
    AuthorizationError,
    BalanceMismatchError,
    InvalidRunStatusError,
    OutOfRangeError,
    PlatformPausedError,
)
from instinct_pool.app.ledger_types import RunStatus


def test_create_run_starts_waiting_with_zeroed_counters(engine, driver):
    run = driver.open_run(run_id=7, min_deposit=10, max_deposit=100, max_participants=5)

    assert run.status == RunStatus.WAITING
    assert (run.total_deposited, run.total_withdrawn, run.participant_count) == (0, 0, 0)
    assert engine.get_platform().total_runs == 1
    assert engine.custody_balance(7) == 0
    assert run.vault in engine.custody.balances


@pytest.mark.parametrize("min_deposit,max_deposit,max_participants", [
    (0, 100, 10),
    (50, 49, 10),
    (1, 100, 1),
    (1, 100, 1001),
])
def test_create_run_rejects_invalid_bounds(engine, min_deposit, max_deposit, max_participants):
    with pytest.raises(OutOfRangeError):
        engine.create_run(OPERATOR, 1, min_deposit, max_deposit, max_participants)
    assert engine.get_platform().total_runs == 0


def test_create_run_accepts_participant_limits(engine):
    engine.create_run(OPERATOR, 1, 1, 10, 2)
    engine.create_run(OPERATOR, 2, 1, 10, 1000)
    assert engine.get_platform().total_runs == 2


def test_create_run_twice_is_already_done(driver):
    driver.open_run(run_id=1)
    with pytest.raises(AlreadyDoneError):
        driver.open_run(run_id=1)


def test_create_run_requires_operator(engine):
    with pytest.raises(AuthorizationError):
        engine.create_run("mallory", 1, 1, 10, 10)


def test_create_run_blocked_while_paused(engine):
    engine.pause(OPERATOR)
    with pytest.raises(PlatformPausedError):
        engine.create_run(OPERATOR, 1, 1, 10, 10)


def test_start_needs_two_participants(driver):
    driver.open_run()
    driver.join(1, "alice", 10 * USDC)
    with pytest.raises(OutOfRangeError):
        driver.start()

    driver.join(1, "bob", 10 * USDC)
    run = driver.start()
    assert run.status == RunStatus.ACTIVE
    assert run.started_at == int(driver.clock())


def test_start_twice_is_rejected(driver):
    driver.open_run()
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    driver.start()
    with pytest.raises(InvalidRunStatusError):
        driver.start()


def test_settle_from_waiting_is_rejected(engine, driver):
    driver.open_run()
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    with pytest.raises(InvalidRunStatusError):
        engine.settle_run(OPERATOR, 1, 20 * USDC)


def test_settle_requires_exact_custody_balance(engine, driver):
    driver.open_run()
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    driver.start()
    driver.clock.advance(engine.config.MIN_RUN_DURATION_SECONDS)

    with pytest.raises(BalanceMismatchError) as excinfo:
        engine.settle_run(OPERATOR, 1, 25 * USDC)
    assert excinfo.value.retryable
    assert excinfo.value.details["vault_balance"] == 20 * USDC
    assert engine.get_run(1).status == RunStatus.ACTIVE


def test_settle_before_minimum_duration_is_rejected(engine, driver):
    driver.open_run()
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    driver.start()
    driver.clock.advance(engine.config.MIN_RUN_DURATION_SECONDS - 1)

    with pytest.raises(InvalidRunStatusError):
        engine.settle_run(OPERATOR, 1, 20 * USDC)
    run = engine.get_run(1)
    assert run.status == RunStatus.ACTIVE
    assert run.final_balance == 0


def test_settle_records_end_and_cannot_repeat(engine, driver):
    driver.open_run()
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    driver.start()
    driver.settle(final_balance=20 * USDC)

    run = engine.get_run(1)
    assert run.status == RunStatus.SETTLED
    assert run.ended_at == int(driver.clock())
    with pytest.raises(InvalidRunStatusError):
        engine.settle_run(OPERATOR, 1, 20 * USDC)


def test_status_is_read_only(driver):
    run = driver.open_run()
    with pytest.raises(AttributeError):
        run.status = RunStatus.SETTLED


def test_runs_are_independent(engine, driver):
    driver.open_run(run_id=1)
    driver.open_run(run_id=2)
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    driver.join(2, "carol", 5 * USDC)
    driver.start(1)

    assert engine.get_run(1).status == RunStatus.ACTIVE
    assert engine.get_run(2).status == RunStatus.WAITING
    assert engine.custody_balance(2) == 5 * USDC
