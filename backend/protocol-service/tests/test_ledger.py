import threading

import pytest

from errors import LedgerError
from ledger import InMemoryMeteredLedger, SqliteMeteredLedger
from models import MeteredOperationType

OP = MeteredOperationType.CASE_ANALYSIS


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    if request.param == "memory":
        return InMemoryMeteredLedger()
    return SqliteMeteredLedger(str(tmp_path / "ledger.sqlite3"))


def test_consume_is_idempotent_per_key(ledger):
    ledger.grant("clinic-1", 3)

    first = ledger.consume("clinic-1", OP, "case-1")
    second = ledger.consume("clinic-1", OP, "case-1")

    assert first.allowed and first.credits_remaining == 2
    assert second.allowed and second.already_consumed
    assert ledger.balance("clinic-1") == 2
    assert ledger.transactions("clinic-1", OP, "case-1") == ["consume"]


def test_insufficient_balance_is_not_allowed(ledger):
    result = ledger.consume("clinic-2", OP, "case-1")
    assert not result.allowed
    assert result.credits_remaining == 0
    assert ledger.operation("clinic-2", OP, "case-1") is None


def test_refund_happens_at_most_once(ledger):
    ledger.grant("clinic-1", 1)
    ledger.consume("clinic-1", OP, "case-1")

    assert ledger.refund("clinic-1", OP, "case-1") is True
    assert ledger.refund("clinic-1", OP, "case-1") is False
    assert ledger.balance("clinic-1") == 1
    assert ledger.transactions("clinic-1", OP, "case-1") == ["consume", "refund"]

    record = ledger.operation("clinic-1", OP, "case-1")
    assert record.consumed and record.refunded


def test_refund_without_consume_is_a_noop(ledger):
    assert ledger.refund("clinic-1", OP, "never-charged") is False
    assert ledger.transactions("clinic-1", OP, "never-charged") == []


def test_refunded_key_cannot_be_consumed_again(ledger):
    ledger.grant("clinic-1", 2)
    ledger.consume("clinic-1", OP, "case-1")
    ledger.refund("clinic-1", OP, "case-1")

    with pytest.raises(LedgerError):
        ledger.consume("clinic-1", OP, "case-1")


def test_operations_are_keyed_separately(ledger):
    ledger.grant("clinic-1", 2)
    ledger.consume("clinic-1", OP, "case-1")
    ledger.consume("clinic-1", MeteredOperationType.DSD_SIMULATION, "case-1")
    assert ledger.balance("clinic-1") == 0


def test_concurrent_consumers_charge_once(ledger):
    ledger.grant("clinic-1", 5)
    results = []

    def worker():
        results.append(ledger.consume("clinic-1", OP, "shared-key"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r.allowed for r in results)
    assert sum(1 for r in results if not r.already_consumed) == 1
    assert ledger.balance("clinic-1") == 4


def test_sqlite_ledger_persists_across_instances(tmp_path):
    path = str(tmp_path / "ledger.sqlite3")
    SqliteMeteredLedger(path).grant("clinic-1", 2)
    SqliteMeteredLedger(path).consume("clinic-1", OP, "case-1")

    reopened = SqliteMeteredLedger(path)
    assert reopened.balance("clinic-1") == 1
    assert reopened.operation("clinic-1", OP, "case-1").consumed
