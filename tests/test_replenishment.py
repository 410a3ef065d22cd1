from datetime import datetime, timedelta, timezone

import pytest

from multitalk.models.domain import (
    UNLIMITED_CREDITS,
    Plan,
    PlanStatus,
    ReplenishmentRule,
    default_replenishment_rules,
)
from multitalk.services.ledger import CreditLedger
from multitalk.services.replenishment import ReplenishmentScheduler
from multitalk.storage.repository import AccountRepository


def _at(year, month, day, hour=0, minute=0, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def subscribed(ledger):
    for account_id, plan in (("free-1", Plan.FREE), ("starter-1", Plan.STARTER), ("mid-1", Plan.MID), ("pro-1", Plan.PRO)):
        ledger.ensure_account(account_id, 5)
        if plan != Plan.FREE:
            ledger.set_plan(account_id, plan, PlanStatus.ACTIVE)
        ledger.try_debit(account_id, 3)
    return ledger


class TestReplenishmentScheduler:
    def test_monday_first_of_month_fires_every_plan(self, subscribed):
        scheduler = ReplenishmentScheduler(subscribed, default_replenishment_rules())

        # 2024-01-01 is a Monday
        reports = scheduler.tick(_at(2024, 1, 1, second=30))

        assert sorted(report.plan.value for report in reports) == ["mid", "pro", "starter"]
        assert subscribed.get_account("starter-1").balance == 10
        assert subscribed.get_account("mid-1").balance == UNLIMITED_CREDITS
        assert subscribed.get_account("pro-1").balance == UNLIMITED_CREDITS
        assert subscribed.get_account("free-1").balance == 2

    def test_rule_fires_once_per_minute(self, subscribed):
        scheduler = ReplenishmentScheduler(subscribed, default_replenishment_rules())

        assert len(scheduler.tick(_at(2024, 1, 1))) == 3
        subscribed.try_debit("starter-1", 4)

        assert scheduler.tick(_at(2024, 1, 1, second=40)) == []
        assert subscribed.get_account("starter-1").balance == 6

    def test_nothing_due_outside_schedule(self, subscribed):
        scheduler = ReplenishmentScheduler(subscribed, default_replenishment_rules())

        assert scheduler.tick(_at(2024, 1, 2)) == []
        assert scheduler.tick(_at(2024, 1, 1, hour=0, minute=1)) == []
        assert subscribed.get_account("starter-1").balance == 2

    def test_fifteenth_fires_mid_only_unless_monday(self, subscribed):
        scheduler = ReplenishmentScheduler(subscribed, default_replenishment_rules())

        # 2024-01-15 is also a Monday
        assert sorted(report.plan.value for report in scheduler.tick(_at(2024, 1, 15))) == ["mid", "starter"]
        # 2024-02-15 is a Thursday
        assert [report.plan for report in scheduler.tick(_at(2024, 2, 15))] == [Plan.MID]

    def test_naive_clock_is_treated_as_utc(self, subscribed):
        scheduler = ReplenishmentScheduler(
            subscribed,
            default_replenishment_rules(),
            clock=lambda: datetime(2024, 1, 8, 0, 0),
        )
        reports = scheduler.tick()
        assert [report.plan for report in reports] == [Plan.STARTER]

    def test_local_time_converted_to_utc(self, subscribed):
        scheduler = ReplenishmentScheduler(subscribed, default_replenishment_rules())
        plus_two = timezone(timedelta(hours=2))
        reports = scheduler.tick(datetime(2024, 1, 8, 2, 0, tzinfo=plus_two))
        assert [report.plan for report in reports] == [Plan.STARTER]

    def test_account_that_left_plan_is_skipped(self, subscribed):
        subscribed.set_plan("starter-1", Plan.FREE, PlanStatus.CANCELLED)
        scheduler = ReplenishmentScheduler(subscribed, default_replenishment_rules())

        reports = scheduler.tick(_at(2024, 1, 8))

        assert reports[0].replenished == 0
        assert subscribed.get_account("starter-1").balance == 2

    def test_failed_account_does_not_abort_batch(self):
        class FlakyLedger(CreditLedger):
            def replenish(self, account_id, target_balance, expected_plan=None):
                if account_id == "starter-bad":
                    raise RuntimeError("write failed")
                return super().replenish(account_id, target_balance, expected_plan=expected_plan)

        ledger = FlakyLedger(AccountRepository())
        for account_id in ("starter-a", "starter-bad", "starter-b"):
            ledger.ensure_account(account_id, 0)
            ledger.set_plan(account_id, Plan.STARTER, PlanStatus.ACTIVE)
        scheduler = ReplenishmentScheduler(
            ledger, [ReplenishmentRule(plan=Plan.STARTER, cadence_expression="* * * * *", target_balance=10)]
        )

        [report] = scheduler.tick(_at(2024, 5, 5, 12, 30))

        assert report.replenished == 2
        assert report.failures == 1
        assert ledger.get_account("starter-a").balance == 10
        assert ledger.get_account("starter-b").balance == 10
        assert ledger.get_account("starter-bad").balance == 0

    def test_duplicate_plan_rules_rejected(self, ledger):
        rules = [
            ReplenishmentRule(plan=Plan.PRO, cadence_expression="0 0 1 * *", target_balance=100),
            ReplenishmentRule(plan=Plan.PRO, cadence_expression="0 0 15 * *", target_balance=100),
        ]
        with pytest.raises(ValueError):
            ReplenishmentScheduler(ledger, rules)

    def test_invalid_cadence_rejected(self, ledger):
        with pytest.raises(ValueError):
            ReplenishmentScheduler(
                ledger, [ReplenishmentRule(plan=Plan.PRO, cadence_expression="0 0 32 * *", target_balance=1)]
            )

    def test_start_and_stop(self, ledger):
        scheduler = ReplenishmentScheduler(ledger, default_replenishment_rules(), tick_interval_seconds=0.01)
        scheduler.start()
        assert scheduler.is_running
        scheduler.stop(timeout=1.0)
        assert not scheduler.is_running
