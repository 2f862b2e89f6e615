"""Distribución de pagos: parte base, bono por aciertos y último retiro."""

import pytest

from conftest import OPERATOR, USDC, FakeClock, PoolDriver
from instinct_pool.app.config import PoolConfig
from instinct_pool.app.custody import InMemoryCustody
from instinct_pool.app.engine import PoolEngine
from instinct_pool.app.errors import (
    AlreadyDoneError,
    AlreadyWithdrawnError,
    ParticipationNotFoundError,
    RunNotSettledError,
)
from instinct_pool.app.treasury_ledger import AuditStatus


SCENARIO_B_DEPOSITS = {
    "p1": 50 * USDC,
    "p2": 75 * USDC,
    "p3": 100 * USDC,
    "p4": 80 * USDC,
    "p5": 95 * USDC,
}


def make_driver(fee_bps: int = 1500, **config) -> PoolDriver:
    clock = FakeClock()
    engine = PoolEngine(config=PoolConfig(**config), custody=InMemoryCustody(), clock=clock)
    engine.create_platform(OPERATOR, fee_bps=fee_bps)
    return PoolDriver(engine, clock)


def settled_scenario_b(**config) -> PoolDriver:
    driver = make_driver(**config)
    driver.open_run()
    driver.join_all(1, SCENARIO_B_DEPOSITS)
    driver.start()
    driver.record_votes(1, {"p1": 10, "p2": 6, "p3": 12, "p4": 0})
    driver.settle(final_balance=500 * USDC)
    return driver


def test_scenario_a_break_even_returns_principal():
    driver = make_driver(fee_bps=0)
    driver.open_run()
    participants = [f"p{i}" for i in range(10)]
    driver.join_all(1, {p: 50 * USDC for p in participants})
    driver.start()
    driver.settle(final_balance=500 * USDC)

    payouts = driver.withdraw_all(1, participants)
    assert set(payouts.values()) == {50 * USDC}
    assert driver.engine.custody_balance(1) == 0


def test_scenario_b_gross_profit_basis():
    driver = settled_scenario_b(BONUS_PROFIT_BASIS="gross")
    run = driver.engine.get_run(1)
    assert run.fee_amount == 15 * USDC
    assert run.final_balance == 485 * USDC

    quote = driver.engine.withdraw("p1", 1)
    assert quote.base_share == 60_625_000
    assert quote.profit_share == 12_500_000
    assert quote.bonus == 1_250_000
    assert quote.payout == 61_875_000
    assert driver.engine.format_amount(quote.payout) == "61.875000 USDC"


def test_scenario_b_net_profit_basis():
    driver = settled_scenario_b()
    quote = driver.engine.withdraw("p1", 1)
    assert quote.base_share == 60_625_000
    assert quote.profit_share == 10_625_000
    assert quote.bonus == 1_062_500
    assert quote.payout == 61_687_500


def test_scenario_b_full_distribution_leaves_no_dust():
    driver = settled_scenario_b(BONUS_PROFIT_BASIS="gross")
    payouts = driver.withdraw_all(1, ["p1", "p2", "p3", "p4", "p5"])

    assert payouts == {
        "p1": 61_875_000,
        "p2": 92_062_500,
        "p3": 124_250_000,
        "p4": 97_000_000,
        "p5": 109_812_500,
    }
    run = driver.engine.get_run(1)
    assert sum(payouts.values()) == run.final_balance
    assert run.total_withdrawn == run.final_balance
    assert run.withdrawn_count == run.participant_count
    assert driver.engine.custody_balance(1) == 0
    assert driver.engine.audit_run(1).status == AuditStatus.SUCCESS


def test_scenario_c_last_withdrawer_absorbs_rounding_dust():
    driver = make_driver(fee_bps=0)
    driver.open_run(min_deposit=1, max_deposit=100)
    driver.join_all(1, {"a": 10, "b": 10, "c": 10})
    driver.start()
    driver.settle(final_balance=31)

    payouts = driver.withdraw_all(1, ["a", "b", "c"])
    assert payouts == {"a": 10, "b": 10, "c": 11}
    assert driver.engine.custody_balance(1) == 0


def test_scenario_d_bonus_applies_to_profit_only():
    driver = make_driver(fee_bps=0)
    driver.open_run(min_deposit=1, max_deposit=1_000)
    participants = [f"p{i}" for i in range(10)]
    driver.join_all(1, {p: 100 for p in participants})
    driver.start()
    driver.record_votes(1, {p: 12 for p in participants})
    driver.settle(final_balance=2_000)

    # Un bono del 12% sobre la parte base completa excedería el balance
    naive_non_last = 9 * (200 * 112 // 100)
    assert naive_non_last > 2_000

    payouts = driver.withdraw_all(1, participants)
    non_last = [payouts[p] for p in participants[:-1]]
    assert non_last == [212] * 9
    assert sum(non_last) <= 2_000
    assert payouts[participants[-1]] == 2_000 - 9 * 212
    assert driver.engine.custody_balance(1) == 0


@pytest.mark.parametrize("counts", [
    (0, 0, 0), (12, 12, 12), (12, 0, 7), (3, 11, 12), (12, 12, 0),
])
def test_non_last_payouts_never_exceed_final_balance(counts):
    driver = make_driver(fee_bps=0)
    driver.open_run(min_deposit=1, max_deposit=1_000)
    names = ["a", "b", "c"]
    driver.join_all(1, {"a": 100, "b": 300, "c": 600})
    driver.start()
    driver.record_votes(1, dict(zip(names, counts)))
    driver.settle(final_balance=3_000)

    payouts = driver.withdraw_all(1, names)
    run = driver.engine.get_run(1)
    assert payouts["a"] + payouts["b"] <= run.final_balance
    assert sum(payouts.values()) == run.final_balance


def test_losing_run_pays_pro_rata_without_bonus():
    driver = make_driver()
    driver.open_run(min_deposit=1, max_deposit=1_000)
    driver.join_all(1, {"a": 100, "b": 300})
    driver.start()
    driver.record_votes(1, {"a": 12, "b": 12})
    driver.settle(final_balance=200)

    quote = driver.engine.withdraw("a", 1)
    assert quote.base_share == 50
    assert (quote.profit_share, quote.bonus) == (0, 0)
    assert quote.payout == 50
    assert driver.engine.withdraw("b", 1).payout == 150


def test_withdraw_before_settlement_is_rejected(driver):
    driver.open_run()
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    driver.start()
    with pytest.raises(RunNotSettledError):
        driver.engine.withdraw("alice", 1)


def test_withdraw_twice_is_already_done():
    driver = settled_scenario_b()
    first = driver.engine.withdraw("p1", 1)
    run = driver.engine.get_run(1)
    snapshot = run.snapshot()

    with pytest.raises(AlreadyWithdrawnError) as excinfo:
        driver.engine.withdraw("p1", 1)
    assert isinstance(excinfo.value, AlreadyDoneError)
    assert run.snapshot() == snapshot
    assert driver.engine.wallet_balance("p1") == first.payout


def test_withdraw_without_participation(driver):
    driver.open_run()
    driver.join_all(1, {"alice": 10 * USDC, "bob": 10 * USDC})
    driver.start()
    driver.settle()
    with pytest.raises(ParticipationNotFoundError):
        driver.engine.withdraw("mallory", 1)


def test_withdrawal_finalizes_participation():
    driver = settled_scenario_b()
    quote = driver.engine.withdraw("p3", 1)
    participation = driver.engine.get_participation(1, "p3")

    assert participation.withdrawn
    assert participation.final_share == quote.payout
    run = driver.engine.get_run(1)
    assert run.withdrawn_count == 1
    assert run.total_withdrawn == quote.payout


def test_preview_matches_withdrawal_and_changes_nothing():
    driver = settled_scenario_b(BONUS_PROFIT_BASIS="gross")
    engine = driver.engine
    version = engine.get_run(1).version

    preview = engine.preview_payout(1, "p2")
    assert engine.get_run(1).version == version
    assert engine.custody_balance(1) == 485 * USDC

    assert engine.withdraw("p2", 1) == preview


def test_post_settlement_donation_goes_to_last_withdrawer():
    driver = make_driver(fee_bps=0)
    driver.open_run(min_deposit=1, max_deposit=1_000)
    driver.join_all(1, {"a": 100, "b": 100})
    driver.start()
    driver.settle(final_balance=200)

    driver.custody.mint(driver.engine.get_run(1).vault, 5)
    assert driver.engine.withdraw("a", 1).payout == 100
    assert driver.engine.withdraw("b", 1).payout == 105
    assert driver.engine.custody_balance(1) == 0
