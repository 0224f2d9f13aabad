"""
Lifecycle Scheduler

Two daily sweeps over every subscribed ledger, driven by APScheduler cron
triggers in the configured time zone:

- Refresh sweep: reset the daily quota of active subscriptions and renew
  expired ones whose plan still exists and whose auto-renew is on.
- Lifecycle sweep: derive each ledger's LifecycleState, deactivate expired
  windows and send the warning / expiry / win-back notifications, each
  exactly once per state entered.

Each user is an independent unit of work; a failure is recorded in the
SweepReport and the sweep moves on.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from . import ledger_math
from .events.publishers import (
    publish_subscription_expired,
    publish_subscription_refreshed,
    publish_subscription_renewed,
)
from .lifecycle import LifecycleTransition, days_until_expiry, derive_state, plan_transition
from .models import (
    LifecycleState,
    NotificationKind,
    Plan,
    SweepFailure,
    SweepKind,
    SweepOutcome,
    SweepReport,
    TokenLedger,
)
from .protocols import NotificationClientProtocol
from .token_service import TokenService

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "token_refresh_sweep"
LIFECYCLE_JOB_ID = "token_lifecycle_sweep"

# Event loop turns to wait for a queued shutdown
SHUTDOWN_POLLS = 10

NOTIFICATION_OUTCOMES = {
    NotificationKind.EXPIRY_WARNING: SweepOutcome.WARNED,
    NotificationKind.SUBSCRIPTION_EXPIRED: SweepOutcome.EXPIRED,
    NotificationKind.RENEWAL_REMINDER: SweepOutcome.REMINDED,
}


class NotificationNotDelivered(Exception):
    """The collaborator did not accept a lifecycle notification"""


class LifecycleScheduler:
    """Refresh and lifecycle sweeps plus their recurring triggers"""

    def __init__(
        self,
        token_service: TokenService,
        notification_client: Optional[NotificationClientProtocol] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.token_service = token_service
        self.repository = token_service.repository
        self.notification_client = notification_client or token_service.notification_client
        self.config = token_service.config
        self.tz = token_service.tz
        self.clock = token_service.clock
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.tz)
        # Most recent finished report per sweep kind
        self.last_reports: Dict[SweepKind, SweepReport] = {}

    # ====================
    # Timers
    # ====================

    def start(self) -> None:
        """Register both cron jobs and start the scheduler"""
        refresh_hour, refresh_minute = self.config.refresh_sweep_at
        lifecycle_hour, lifecycle_minute = self.config.lifecycle_sweep_at

        self.scheduler.add_job(
            self.run_refresh_sweep,
            CronTrigger(hour=refresh_hour, minute=refresh_minute, timezone=self.tz),
            id=REFRESH_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_lifecycle_sweep,
            CronTrigger(hour=lifecycle_hour, minute=lifecycle_minute, timezone=self.tz),
            id=LIFECYCLE_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=3600,
        )

        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            f"✅ Lifecycle scheduler started: refresh at {self.config.refresh_sweep_time}, "
            f"lifecycle at {self.config.lifecycle_sweep_time} ({self.config.scheduler_timezone})"
        )

    async def stop(self) -> None:
        """Shut the timers down; returns once the scheduler reports stopped"""
        if not self.scheduler.running:
            return
        # AsyncIOScheduler queues shutdown on the event loop
        self.scheduler.shutdown(wait=False)
        for _ in range(SHUTDOWN_POLLS):
            if not self.scheduler.running:
                break
            await asyncio.sleep(0)

        if self.scheduler.running:
            logger.warning("⚠️  Lifecycle scheduler did not stop")
        else:
            logger.info("✅ Lifecycle scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    # ====================
    # Sweep driver
    # ====================

    async def _sweep(
        self,
        kind: SweepKind,
        step: Callable[[TokenLedger, SweepReport], Awaitable[None]],
        run_id: Optional[str] = None,
    ) -> SweepReport:
        report = SweepReport(sweep=kind, started_at=self.clock.now())
        if run_id:
            report.run_id = run_id
        batch_size = self.config.sweep_batch_size
        after: Optional[str] = None

        while True:
            try:
                page = await self.repository.list_subscribed_ledgers(after, batch_size)
            except Exception as e:
                logger.error(f"❌ {kind.value} sweep could not list ledgers after {after}: {e}", exc_info=True)
                report.failures.append(SweepFailure(user_id=after or "*", stage="list", error=str(e)))
                break

            for ledger in page:
                try:
                    await step(ledger, report)
                except Exception as e:
                    logger.error(f"❌ {kind.value} sweep failed for {ledger.user_id}: {e}", exc_info=True)
                    report.fail(ledger.user_id, kind.value, e)

            if len(page) < batch_size:
                break
            after = page[-1].user_id

        report.finished_at = self.clock.now()
        self.last_reports[kind] = report
        logger.info(
            f"{kind.value.capitalize()} sweep finished: processed={report.processed} "
            f"counts={report.counts} failures={len(report.failures)}"
        )
        return report

    # ====================
    # Refresh sweep
    # ====================

    async def run_refresh_sweep(self, run_id: Optional[str] = None) -> SweepReport:
        """Reset daily quotas and renew expired subscriptions"""
        return await self._sweep(SweepKind.REFRESH, self._refresh_one, run_id)

    def _daily_rate(self, ledger: TokenLedger, plan: Optional[Plan]) -> int:
        if plan is not None:
            return plan.daily_rate
        return ledger.window.daily_rate or self.config.default_daily_rate

    async def _refresh_one(self, snapshot: TokenLedger, report: SweepReport) -> None:
        plan_ref = snapshot.window.plan_ref
        plan = await self.repository.get_plan(plan_ref) if plan_ref else None

        def compute(ledger: TokenLedger, now: datetime):
            window = ledger.window
            if window.plan_ref is None or window.end_date is None:
                return None, SweepOutcome.SKIPPED
            current_plan = plan if plan is not None and plan.plan_id == window.plan_ref else None

            if now <= window.end_date:
                rate = self._daily_rate(ledger, current_plan)
                return ledger_math.refresh_daily_quota(ledger, rate, now), SweepOutcome.REFRESHED

            if current_plan is not None and window.auto_renew:
                renewed = ledger_math.renew_window(
                    ledger, current_plan.plan_id, current_plan.duration_days, current_plan.daily_rate, now
                )
                return renewed, SweepOutcome.RENEWED

            return None, SweepOutcome.SKIPPED

        ledger, outcome = await self.token_service.mutate_ledger(snapshot.user_id, compute)
        report.record(ledger.user_id, outcome)

        if outcome == SweepOutcome.REFRESHED:
            logger.debug(f"Refreshed {ledger.user_id}: daily={ledger.daily_balance}")
            await publish_subscription_refreshed(
                self.token_service.event_bus, ledger.user_id, ledger.window.plan_ref, ledger.daily_balance
            )
        elif outcome == SweepOutcome.RENEWED:
            window = ledger.window
            logger.info(f"Renewed {ledger.user_id} on {window.plan_ref} until {window.end_date}")
            await publish_subscription_renewed(
                self.token_service.event_bus,
                user_id=ledger.user_id,
                plan_ref=window.plan_ref,
                start_date=window.start_date,
                end_date=window.end_date,
                daily_rate=window.daily_rate,
                monthly_allocation=ledger.monthly_allocation,
                trigger="sweep",
            )

    # ====================
    # Lifecycle sweep
    # ====================

    async def run_lifecycle_sweep(self, run_id: Optional[str] = None) -> SweepReport:
        """Advance every subscription through its lifecycle states"""
        return await self._sweep(SweepKind.LIFECYCLE, self._advance_one, run_id)

    def _plan(self, ledger: TokenLedger, now: datetime) -> LifecycleTransition:
        window = ledger.window
        derived = derive_state(now, window, self.tz)
        days_left = days_until_expiry(now, window.end_date, self.tz) if window.end_date else None
        return plan_transition(window.lifecycle_state, derived, window, days_left)

    async def _advance_one(self, snapshot: TokenLedger, report: SweepReport) -> None:
        def claim(ledger: TokenLedger, now: datetime):
            transition = self._plan(ledger, now)
            if transition.derived == LifecycleState.NO_SUBSCRIPTION or not transition.changes_ledger:
                return None, transition

            updated = ledger_math.deactivate(ledger) if transition.deactivate else ledger
            window = updated.window.model_copy(update={"lifecycle_state": transition.derived})
            return updated.model_copy(update={"window": window}), transition

        ledger, transition = await self.token_service.mutate_ledger(snapshot.user_id, claim)
        user_id = ledger.user_id

        if transition.derived == LifecycleState.NO_SUBSCRIPTION:
            report.record(user_id, SweepOutcome.SKIPPED)
            return
        if not transition.changes_ledger:
            report.record(user_id, SweepOutcome.UNCHANGED)
            return

        if transition.deactivate:
            logger.info(f"Deactivated subscription of {user_id} ({transition.derived.value})")
            await publish_subscription_expired(
                self.token_service.event_bus, user_id, ledger.window.plan_ref, ledger.window.end_date
            )

        if transition.notification is not None:
            error: Optional[Exception] = None
            try:
                if not await self._deliver(user_id, transition):
                    error = NotificationNotDelivered(
                        f"{transition.notification.value} for {transition.derived.value} not delivered"
                    )
            except Exception as e:
                error = e
            if error is not None:
                await self._release_claim(user_id, transition)
                logger.warning(f"⚠️ {error}; {user_id} will be retried if the sweep runs again today")
                report.fail(user_id, "notify", error)
                return
            report.record(user_id, NOTIFICATION_OUTCOMES[transition.notification])
            return

        report.record(user_id, SweepOutcome.DEACTIVATED if transition.deactivate else SweepOutcome.STATE_CHANGED)

    async def _deliver(self, user_id: str, transition: LifecycleTransition) -> bool:
        if self.notification_client is None:
            raise NotificationNotDelivered("no notification client configured")
        return bool(await self.notification_client.send_notification(
            user_id, transition.notification, transition.payload
        ))

    async def _release_claim(self, user_id: str, transition: LifecycleTransition) -> None:
        """Put the previous state back so a rerun on the same day sends again; deactivation stays"""
        def release(ledger: TokenLedger, now: datetime):
            if ledger.window.lifecycle_state != transition.derived:
                return None, False
            window = ledger.window.model_copy(update={"lifecycle_state": transition.previous})
            return ledger.model_copy(update={"window": window}), True

        await self.token_service.mutate_ledger(user_id, release)


__all__ = ["LifecycleScheduler", "REFRESH_JOB_ID", "LIFECYCLE_JOB_ID"]
