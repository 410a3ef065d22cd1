import threading

import pytest

from multitalk.errors import AccountNotFound, LedgerInvariantViolation
from multitalk.models.domain import Plan, PlanStatus


def test_ensure_account_seeds_once(ledger):
    created = ledger.ensure_account("acct-1", 5)
    assert created.balance == 5
    assert created.plan == Plan.FREE
    assert created.plan_status == PlanStatus.ACTIVE

    ledger.try_debit("acct-1", 2)
    again = ledger.ensure_account("acct-1", 5, Plan.PRO)
    assert again.balance == 3
    assert again.plan == Plan.FREE


def test_try_debit_success_and_insufficient(ledger):
    ledger.ensure_account("acct-1", 1)

    first = ledger.try_debit("acct-1", 1)
    assert first.ok is True
    assert first.remaining_balance == 0

    second = ledger.try_debit("acct-1", 1)
    assert second.ok is False
    assert second.remaining_balance == 0
    assert ledger.get_account("acct-1").balance == 0


def test_try_debit_rejects_rather_than_clamps(ledger):
    ledger.ensure_account("acct-1", 2)
    result = ledger.try_debit("acct-1", 3)
    assert result.ok is False
    assert ledger.get_account("acct-1").balance == 2


def test_try_debit_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        ledger.try_debit("missing", 1)


def test_amounts_must_be_positive(ledger):
    ledger.ensure_account("acct-1", 5)
    with pytest.raises(ValueError):
        ledger.try_debit("acct-1", 0)
    with pytest.raises(ValueError):
        ledger.credit("acct-1", -1)
    with pytest.raises(ValueError):
        ledger.replenish("acct-1", -10)


def test_concurrent_debits_on_last_credit(ledger):
    ledger.ensure_account("acct-1", 1)
    barrier = threading.Barrier(16)
    results = []
    lock = threading.Lock()

    def debit():
        barrier.wait()
        result = ledger.try_debit("acct-1", 1)
        with lock:
            results.append(result)

    threads = [threading.Thread(target=debit) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.ok) == 1
    assert ledger.get_account("acct-1").balance == 0


def test_balance_never_negative_with_replenish_racing(ledger):
    ledger.ensure_account("acct-1", 20)
    barrier = threading.Barrier(40)
    observed = []
    lock = threading.Lock()

    def debit():
        barrier.wait()
        for _ in range(5):
            result = ledger.try_debit("acct-1", 1)
            with lock:
                observed.append(result.remaining_balance)

    def replenish():
        barrier.wait()
        for _ in range(5):
            ledger.replenish("acct-1", 3)

    threads = [threading.Thread(target=debit) for _ in range(30)]
    threads += [threading.Thread(target=replenish) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(balance >= 0 for balance in observed)
    assert ledger.get_account("acct-1").balance >= 0


def test_replenish_sets_absolute_value(ledger):
    ledger.ensure_account("acct-1", 5)
    assert ledger.replenish("acct-1", 10) is True
    assert ledger.get_account("acct-1").balance == 10
    assert ledger.replenish("acct-1", 10) is True
    assert ledger.get_account("acct-1").balance == 10


def test_replenish_skips_account_that_changed_plan(ledger):
    ledger.ensure_account("acct-1", 5)
    ledger.set_plan("acct-1", Plan.STARTER, PlanStatus.ACTIVE)
    ledger.set_plan("acct-1", Plan.FREE, PlanStatus.CANCELLED)

    assert ledger.replenish("acct-1", 10, expected_plan=Plan.STARTER) is False
    assert ledger.get_account("acct-1").balance == 5


def test_credit_restores_balance(ledger):
    ledger.ensure_account("acct-1", 1)
    ledger.try_debit("acct-1", 1)
    assert ledger.credit("acct-1", 1) == 1


def test_negative_balance_aborts_update(ledger):
    ledger.ensure_account("acct-1", 2)

    def corrupt(account):
        account.balance = -3

    with pytest.raises(LedgerInvariantViolation):
        ledger.transact("acct-1", corrupt)
    assert ledger.get_account("acct-1").balance == 2


def test_accounts_on_plan(ledger):
    ledger.ensure_account("a", 5)
    ledger.ensure_account("b", 5)
    ledger.ensure_account("c", 5)
    ledger.set_plan("b", Plan.PRO, PlanStatus.ACTIVE)
    ledger.set_plan("c", Plan.PRO, PlanStatus.PAST_DUE)

    assert sorted(ledger.accounts_on_plan(Plan.PRO)) == ["b", "c"]
    assert ledger.accounts_on_plan(Plan.FREE) == ["a"]
