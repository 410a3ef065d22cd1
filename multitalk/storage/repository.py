from __future__ import annotations

from threading import Lock
from typing import Callable, Dict, List, TypeVar
from uuid import UUID

from multitalk.errors import AccountNotFound, JobNotFound
from multitalk.models.domain import Account, BillingEvent, Job, Plan, Subscription, SubscriptionStatus, utcnow

T = TypeVar("T")


class AccountRepository:
    """Account rows with one lock per account.

    ``update`` is the store's conditional write: the mutation runs against a
    private copy while the account's lock is held and the copy replaces the
    row only if the callback returns normally.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._locks: Dict[str, Lock] = {}
        self._registry_lock = Lock()

    def _lock_for(self, account_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = Lock()
                self._locks[account_id] = lock
            return lock

    def insert_if_absent(self, account: Account) -> Account:
        with self._lock_for(account.id):
            existing = self._accounts.get(account.id)
            if existing is None:
                with self._registry_lock:
                    self._accounts[account.id] = account.model_copy(deep=True)
                return account.model_copy(deep=True)
            return existing.model_copy(deep=True)

    def get(self, account_id: str) -> Account | None:
        with self._lock_for(account_id):
            account = self._accounts.get(account_id)
            return account.model_copy(deep=True) if account else None

    def update(self, account_id: str, mutate: Callable[[Account], T]) -> T:
        with self._lock_for(account_id):
            current = self._accounts.get(account_id)
            if current is None:
                raise AccountNotFound(f"account {account_id} not found")
            draft = current.model_copy(deep=True)
            result = mutate(draft)
            if draft != current:
                draft.updated_at = utcnow()
                self._accounts[account_id] = draft
            return result

    def ids_on_plan(self, plan: Plan) -> List[str]:
        with self._registry_lock:
            snapshot = list(self._accounts.values())
        return [account.id for account in snapshot if account.plan == plan]


class JobRepository:
    def __init__(self) -> None:
        self._jobs: Dict[UUID, Job] = {}
        self._lock = Lock()

    def save(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def get(self, job_id: UUID) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def update(self, job_id: UUID, mutate: Callable[[Job], None]) -> Job:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(f"job {job_id} not found")
            draft = current.model_copy(deep=True)
            mutate(draft)
            draft.updated_at = utcnow()
            self._jobs[job_id] = draft
            return draft.model_copy(deep=True)

    def list(self) -> List[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]


class BillingEventRepository:
    """Applied billing events, keyed by the processor's event id."""

    def __init__(self) -> None:
        self._events: Dict[str, BillingEvent] = {}
        self._lock = Lock()

    def is_processed(self, external_event_id: str) -> bool:
        with self._lock:
            return external_event_id in self._events

    def record(self, event: BillingEvent) -> bool:
        """Store the event as processed. Returns False if the id was already taken."""
        with self._lock:
            if event.external_event_id in self._events:
                return False
            self._events[event.external_event_id] = event.model_copy(update={"processed": True}, deep=True)
            return True

    def list_for_account(self, account_id: str) -> List[BillingEvent]:
        with self._lock:
            return [event.model_copy(deep=True) for event in self._events.values() if event.account_id == account_id]


class SubscriptionRepository:
    def __init__(self) -> None:
        self._subscriptions: Dict[UUID, Subscription] = {}
        self._lock = Lock()

    def save(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription

    def transition(
        self,
        account_id: str,
        current: SubscriptionStatus,
        target: SubscriptionStatus,
        plan: Plan | None = None,
    ) -> Subscription | None:
        """Move the newest matching subscription from ``current`` to ``target``."""
        with self._lock:
            candidates = [
                sub
                for sub in self._subscriptions.values()
                if sub.account_id == account_id and sub.status == current and (plan is None or sub.plan == plan)
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda sub: sub.created_at)
            updated = newest.model_copy(update={"status": target, "updated_at": utcnow()}, deep=True)
            self._subscriptions[updated.id] = updated
            return updated.model_copy(deep=True)

    def list_for_account(self, account_id: str) -> List[Subscription]:
        with self._lock:
            subs = [sub.model_copy(deep=True) for sub in self._subscriptions.values() if sub.account_id == account_id]
        subs.sort(key=lambda sub: sub.created_at, reverse=True)
        return subs
