from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from multitalk.models.domain import Plan, ReplenishmentRule, utcnow
from multitalk.services.cron import CronSpec, parse_cron
from multitalk.services.ledger import CreditLedger


@dataclass(frozen=True)
class ReplenishmentReport:
    plan: Plan
    target_balance: int
    replenished: int
    skipped: int
    failures: int


class ReplenishmentScheduler:
    """In-process polling scheduler that resets balances per plan.

    ``tick()`` checks every rule against the current UTC minute and fires the
    due ones side by side. A rule fires at most once per matching minute;
    minutes that pass while the process is down are not caught up.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        rules: Sequence[ReplenishmentRule],
        tick_interval_seconds: float = 20.0,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        seen: set[Plan] = set()
        for rule in rules:
            if rule.plan in seen:
                raise ValueError(f"plan {rule.plan.value} has more than one replenishment rule")
            seen.add(rule.plan)
        self.ledger = ledger
        self.rules: list[tuple[ReplenishmentRule, CronSpec]] = [
            (rule, parse_cron(rule.cadence_expression)) for rule in rules
        ]
        self.log = logger or logging.getLogger(__name__)
        self._clock = clock
        self._tick_interval = tick_interval_seconds
        self._last_fired: dict[Plan, datetime] = {}
        self._fired_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max(1, len(self.rules)), thread_name_prefix="replenish")
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self, now: datetime | None = None) -> list[ReplenishmentReport]:
        minute = self._to_utc(now or self._clock()).replace(second=0, microsecond=0)
        due: list[ReplenishmentRule] = []
        with self._fired_lock:
            for rule, spec in self.rules:
                if not spec.matches(minute) or self._last_fired.get(rule.plan) == minute:
                    continue
                self._last_fired[rule.plan] = minute
                due.append(rule)
        futures = [self._pool.submit(self.fire, rule) for rule in due]
        return [future.result() for future in futures]

    def fire(self, rule: ReplenishmentRule) -> ReplenishmentReport:
        replenished = skipped = failures = 0
        for account_id in self.ledger.accounts_on_plan(rule.plan):
            try:
                if self.ledger.replenish(account_id, rule.target_balance, expected_plan=rule.plan):
                    replenished += 1
                else:
                    skipped += 1
            except Exception:
                failures += 1
                self.log.exception(
                    "replenishment failed for account",
                    extra={"account_id": account_id, "plan": rule.plan.value},
                )
        report = ReplenishmentReport(
            plan=rule.plan,
            target_balance=rule.target_balance,
            replenished=replenished,
            skipped=skipped,
            failures=failures,
        )
        self.log.info(
            "credits replenished",
            extra={
                "plan": rule.plan.value,
                "target_balance": rule.target_balance,
                "replenished": replenished,
                "skipped": skipped,
                "failures": failures,
            },
        )
        return report

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="replenishment-scheduler", daemon=True)
        self._thread.start()
        self.log.info("replenishment scheduler started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._pool.shutdown(wait=False)
        self.log.info("replenishment scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                self.log.exception("replenishment tick failed")
            self._stop_event.wait(timeout=self._tick_interval)

    def _to_utc(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc)
