from __future__ import annotations

import logging
from typing import Mapping, Optional
from uuid import uuid4

from multitalk.errors import UnknownPlan
from multitalk.models.domain import (
    Account,
    BillingEvent,
    BillingEventType,
    Plan,
    PlanStatus,
    Subscription,
    SubscriptionStatus,
)
from multitalk.services.ledger import CreditLedger
from multitalk.storage.repository import BillingEventRepository, SubscriptionRepository


class _AlreadyApplied(Exception):
    pass


class SubscriptionReconciler:
    """Applies billing processor events to account plans, at most once per event id.

    The plan change and the processed marker are written inside the same
    account update: if recording the event fails the plan change is dropped,
    and a redelivered event finds the marker and does nothing.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        events: BillingEventRepository,
        seed_balance: int,
        subscriptions: SubscriptionRepository | None = None,
        plan_prices: Mapping[str, float] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ledger = ledger
        self.events = events
        self.seed_balance = seed_balance
        self.subscriptions = subscriptions or SubscriptionRepository()
        self.plan_prices = dict(plan_prices or {})
        self.log = logger or logging.getLogger(__name__)

    def apply(self, event: BillingEvent) -> bool:
        """Returns True when the event changed account state."""
        if self.events.is_processed(event.external_event_id):
            self.log.info("duplicate billing event ignored", extra=self._context(event))
            return False

        target = self._target(event)
        if target is None:
            return False
        plan, status = target

        # Billing can reach an account before its first job does.
        self.ledger.ensure_account(event.account_id, self.seed_balance)

        def _apply(account: Account) -> None:
            account.plan = plan
            account.plan_status = status
            if not self.events.record(event):
                raise _AlreadyApplied()

        try:
            self.ledger.transact(event.account_id, _apply)
        except _AlreadyApplied:
            self.log.info("duplicate billing event ignored", extra=self._context(event))
            return False

        self.log.info(
            "subscription updated",
            extra={**self._context(event), "plan": plan.value, "plan_status": status.value},
        )
        self._settle_checkout(event.account_id, plan, status)
        return True

    def open_checkout(self, account_id: str, plan_id: str) -> Subscription:
        """Record a pending subscription for a plan the user is about to pay for."""
        try:
            plan = Plan((plan_id or "").strip().lower())
        except ValueError:
            raise UnknownPlan(plan_id) from None
        if plan == Plan.FREE or plan.value not in self.plan_prices:
            raise UnknownPlan(plan_id)
        subscription = self.subscriptions.save(Subscription(id=uuid4(), account_id=account_id, plan=plan))
        self.log.info(
            "checkout opened",
            extra={"account_id": account_id, "plan": plan.value, "subscription_id": str(subscription.id)},
        )
        return subscription

    def subscriptions_for(self, account_id: str) -> list[Subscription]:
        return self.subscriptions.list_for_account(account_id)

    def history(self, account_id: str) -> list[BillingEvent]:
        return self.events.list_for_account(account_id)

    def _settle_checkout(self, account_id: str, plan: Plan, status: PlanStatus) -> None:
        if status == PlanStatus.CANCELLED:
            self.subscriptions.transition(account_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)
        elif plan != Plan.FREE:
            self.subscriptions.transition(account_id, SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, plan=plan)

    def _target(self, event: BillingEvent) -> tuple[Plan, PlanStatus] | None:
        try:
            event_type = BillingEventType(event.type)
        except ValueError:
            self.log.warning("unhandled billing event type", extra=self._context(event))
            return None

        if event_type == BillingEventType.SUBSCRIPTION_CANCELLED:
            return Plan.FREE, PlanStatus.CANCELLED
        if event.target_plan is None:
            self.log.warning("billing event without a known plan ignored", extra=self._context(event))
            return None
        return event.target_plan, event.target_status or PlanStatus.ACTIVE

    def _context(self, event: BillingEvent) -> dict[str, str]:
        return {
            "event_id": event.external_event_id,
            "event_type": event.type,
            "account_id": event.account_id,
        }
