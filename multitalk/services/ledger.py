from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from multitalk.errors import LedgerInvariantViolation
from multitalk.models.domain import Account, Plan, PlanStatus
from multitalk.storage.repository import AccountRepository

T = TypeVar("T")


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    remaining_balance: int


class CreditLedger:
    """Owns account balances.

    Every operation is a single read-decide-write on one account row, so a
    debit can never interleave with another debit or a replenish of the same
    account. Operations on different accounts never wait on each other.
    Insufficient balance is reported through ``DebitResult.ok``; the ledger
    does not retry storage faults.
    """

    def __init__(self, accounts: AccountRepository, logger: Optional[logging.Logger] = None) -> None:
        self.accounts = accounts
        self.log = logger or logging.getLogger(__name__)

    def ensure_account(self, account_id: str, seed_balance: int, seed_plan: Plan = Plan.FREE) -> Account:
        if seed_balance < 0:
            raise ValueError("seed balance must be non-negative")
        account = self.accounts.insert_if_absent(
            Account(id=account_id, balance=seed_balance, plan=seed_plan, plan_status=PlanStatus.ACTIVE)
        )
        self._check(account)
        return account

    def get_account(self, account_id: str) -> Account | None:
        account = self.accounts.get(account_id)
        if account is not None:
            self._check(account)
        return account

    def try_debit(self, account_id: str, amount: int) -> DebitResult:
        if amount <= 0:
            raise ValueError("debit amount must be positive")

        def _debit(account: Account) -> DebitResult:
            if account.balance < amount:
                return DebitResult(ok=False, remaining_balance=account.balance)
            account.balance -= amount
            return DebitResult(ok=True, remaining_balance=account.balance)

        result = self.transact(account_id, _debit)
        if result.ok:
            self.log.info(
                "credits debited",
                extra={"account_id": account_id, "amount": amount, "balance": result.remaining_balance},
            )
        return result

    def credit(self, account_id: str, amount: int) -> int:
        """Give credits back, e.g. to compensate a debit whose job never started."""
        if amount <= 0:
            raise ValueError("credit amount must be positive")

        def _credit(account: Account) -> int:
            account.balance += amount
            return account.balance

        balance = self.transact(account_id, _credit)
        self.log.info("credits refunded", extra={"account_id": account_id, "amount": amount, "balance": balance})
        return balance

    def replenish(self, account_id: str, target_balance: int, expected_plan: Plan | None = None) -> bool:
        """Set the balance to ``target_balance``.

        With ``expected_plan`` the write is skipped (and False returned) when the
        account has moved to another plan since it was selected.
        """
        if target_balance < 0:
            raise ValueError("target balance must be non-negative")

        def _replenish(account: Account) -> bool:
            if expected_plan is not None and account.plan != expected_plan:
                return False
            account.balance = target_balance
            return True

        return self.transact(account_id, _replenish)

    def set_plan(self, account_id: str, plan: Plan, status: PlanStatus) -> Account:
        def _set(account: Account) -> Account:
            account.plan = plan
            account.plan_status = status
            return account.model_copy(deep=True)

        return self.transact(account_id, _set)

    def accounts_on_plan(self, plan: Plan) -> list[str]:
        return self.accounts.ids_on_plan(plan)

    def transact(self, account_id: str, mutate: Callable[[Account], T]) -> T:
        """Run ``mutate`` as one atomic update of the account row.

        The balance is checked before and after the mutation; a negative value
        aborts the update and is never corrected silently.
        """

        def _guarded(account: Account) -> T:
            self._check(account)
            result = mutate(account)
            self._check(account)
            return result

        return self.accounts.update(account_id, _guarded)

    def _check(self, account: Account) -> None:
        if account.balance < 0:
            self.log.critical(
                "negative balance detected",
                extra={"account_id": account.id, "balance": account.balance},
            )
            raise LedgerInvariantViolation(f"account {account.id} has negative balance {account.balance}")
