import pytest

from conftest import OPERATOR, USDC
from instinct_pool.app.treasury_ledger import (
    GENESIS_HASH,
    AuditStatus,
    EntryType,
    TreasuryLedger,
)


@pytest.fixture
def settled(driver):
    driver.open_run()
    driver.join_all(1, {"alice": 200 * USDC, "bob": 200 * USDC})
    driver.start()
    driver.settle(final_balance=500 * USDC)
    return driver


def test_entries_chain_from_genesis():
    ledger = TreasuryLedger(clock=lambda: 1.0)
    first = ledger.record(EntryType.DEPOSIT, "alice", "vault:1", 10, run_id=1, actor="alice")
    second = ledger.record(EntryType.DEPOSIT, "bob", "vault:1", 20, run_id=1, actor="bob")

    assert first.previous_hash == GENESIS_HASH
    assert second.previous_hash == first.entry_hash
    assert ledger.head_hash == second.entry_hash
    assert second.entry_id == "TRE-00000002"
    assert ledger.verify_chain()["integrity_status"] == "OK"


def test_tampered_entry_breaks_chain(settled):
    ledger = settled.engine.ledger
    ledger.entries[0].amount += 1

    chain = ledger.verify_chain()
    assert chain["integrity_status"] == "ALERT"
    assert chain["broken_entries"] == ["TRE-00000001"]
    assert settled.engine.audit_platform().status == AuditStatus.CRITICAL_MISMATCH


def test_totals_by_type(settled):
    engine = settled.engine
    engine.withdraw("alice", 1)

    totals = engine.ledger.totals_by_type(run_id=1)
    assert totals[EntryType.DEPOSIT.value] == 400 * USDC
    assert totals[EntryType.PLATFORM_FEE.value] == 15 * USDC
    assert totals[EntryType.WITHDRAWAL.value] == engine.get_run(1).total_withdrawn
    assert totals[EntryType.EMERGENCY_WITHDRAWAL.value] == 0


def test_audit_run_success_through_lifecycle(settled):
    engine = settled.engine
    assert engine.audit_run(1).status == AuditStatus.SUCCESS
    engine.withdraw("alice", 1)
    assert engine.audit_run(1).status == AuditStatus.SUCCESS
    engine.withdraw("bob", 1)

    report = engine.audit_run(1)
    assert report.status == AuditStatus.SUCCESS
    assert report.custody_balance == 0
    assert report.drift == 0


def test_audit_run_reports_custody_drift(settled):
    engine = settled.engine
    engine.custody.mint(engine.get_run(1).vault, 5)

    report = engine.audit_run(1)
    assert report.status == AuditStatus.CRITICAL_MISMATCH
    assert report.drift == 5
    assert report.to_dict()["status"] == "CRITICAL_MISMATCH"


def test_audit_platform_reconciles_fee_account(settled):
    engine = settled.engine
    assert engine.audit_platform().status == AuditStatus.SUCCESS

    engine.custody.burn(engine.get_platform().fee_account, 1)
    report = engine.audit_platform()
    assert report.status == AuditStatus.CRITICAL_MISMATCH
    assert report.drift == -1


def test_treasury_summary(settled):
    engine = settled.engine
    engine.withdraw_collected_fees(OPERATOR, 5 * USDC, "treasury")

    summary = engine.treasury_summary()
    assert summary["total_entries"] == 4
    assert summary["fee_account_balance"] == 10 * USDC
    assert summary["total_fees_collected"] == 15 * USDC
    assert summary["fees_withdrawn"] == 5 * USDC
    assert summary["last_entry"] == "TRE-00000004"
