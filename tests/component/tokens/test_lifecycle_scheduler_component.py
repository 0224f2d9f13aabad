"""
Lifecycle Scheduler Component Tests

Refresh / renewal sweep, lifecycle sweep and their cron registration.

Usage:
    pytest tests/component/tokens/test_lifecycle_scheduler_component.py -v
"""

from datetime import timedelta

import pytest

from core.config import TokenConfig
from microservices.token_service.lifecycle_scheduler import LIFECYCLE_JOB_ID, REFRESH_JOB_ID
from microservices.token_service.models import LifecycleState, NotificationKind, SweepKind, SweepOutcome
from tests.contracts.tokens.data_contract import SCHEDULER_TZ


# =============================================================================
# Refresh sweep
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestRefreshSweep:

    async def test_active_window_gets_fresh_daily_quota(
        self, lifecycle_scheduler, mock_repository, mock_event_bus, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=12, daily_balance=3, daily_spent_today=97,
            monthly_spent=400, monthly_remaining=2600,
            bonus=data_factory.make_bonus(20, clock.now()),
        ))

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.REFRESHED
        stored = mock_repository.stored(ledger.user_id)
        assert stored.daily_balance == 100
        assert stored.daily_spent_today == 0
        assert stored.window.last_refreshed_at == clock.now()
        assert stored.monthly_spent == 400
        assert stored.monthly_remaining == 2600
        assert stored.bonus.amount == 20
        assert len(mock_event_bus.get_published("subscription.refreshed")) == 1

    async def test_unused_daily_quota_does_not_roll_over(
        self, lifecycle_scheduler, mock_repository, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=12, daily_balance=100,
        ))

        await lifecycle_scheduler.run_refresh_sweep()

        assert mock_repository.stored(ledger.user_id).daily_balance == 100

    async def test_expired_window_with_auto_renew_is_renewed(
        self, lifecycle_scheduler, mock_repository, mock_event_bus, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=-1, active=False, daily_balance=0,
            lifecycle_state=LifecycleState.EXPIRED,
        ))

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.RENEWED
        stored = mock_repository.stored(ledger.user_id)
        assert stored.window.active is True
        assert stored.window.end_date == clock.now() + timedelta(days=30)
        assert stored.window.lifecycle_state is None
        assert stored.daily_balance == 100
        assert stored.monthly_allocation == 3000
        renewed = mock_event_bus.get_published("subscription.renewed")
        assert renewed[0]["data"]["trigger"] == "sweep"

    async def test_expired_window_without_auto_renew_is_left_alone(
        self, lifecycle_scheduler, mock_repository, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=-1, auto_renew=False,
        ))

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.SKIPPED
        assert mock_repository.stored(ledger.user_id).version == 0

    async def test_expired_window_with_deleted_plan_is_not_renewed(
        self, lifecycle_scheduler, mock_repository, data_factory, clock
    ):
        orphan_plan = data_factory.make_plan()
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), orphan_plan, days_left=-2,
        ))

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.SKIPPED

    async def test_refresh_falls_back_to_window_rate(
        self, lifecycle_scheduler, mock_repository, data_factory, clock
    ):
        orphan_plan = data_factory.make_plan(daily_rate=70)
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), orphan_plan, days_left=5, daily_balance=0,
        ))

        await lifecycle_scheduler.run_refresh_sweep()

        assert mock_repository.stored(ledger.user_id).daily_balance == 70

    async def test_ledgers_without_plan_are_not_swept(
        self, lifecycle_scheduler, mock_repository, data_factory
    ):
        mock_repository.put_ledger(data_factory.make_ledger(daily_balance=5))

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.processed == 0

    async def test_one_failure_does_not_stop_the_sweep(
        self, lifecycle_scheduler, mock_repository, data_factory, clock, plan
    ):
        users = [
            mock_repository.put_ledger(data_factory.make_subscribed_ledger(
                clock.now(), plan, days_left=10, user_id=f"user_{i}", daily_balance=0,
            ))
            for i in range(3)
        ]
        mock_repository.fail_for_user["user_1"] = RuntimeError("row locked")

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.outcomes["user_0"] == SweepOutcome.REFRESHED
        assert report.outcomes["user_1"] == SweepOutcome.FAILED
        assert report.outcomes["user_2"] == SweepOutcome.REFRESHED
        assert [f.user_id for f in report.failures] == ["user_1"]
        assert report.failures[0].stage == "refresh"
        assert mock_repository.stored(users[2].user_id).daily_balance == 100

    async def test_sweep_pages_through_all_ledgers(
        self, lifecycle_scheduler, mock_repository, data_factory, clock, plan
    ):
        lifecycle_scheduler.config = TokenConfig(sweep_batch_size=2)
        for i in range(5):
            mock_repository.put_ledger(data_factory.make_subscribed_ledger(
                clock.now(), plan, days_left=10, user_id=f"user_{i}",
            ))

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.processed == 5
        listings = mock_repository.calls("list_subscribed_ledgers")
        assert [c[1] for c in listings] == [None, "user_1", "user_3"]

    async def test_listing_failure_is_reported(self, lifecycle_scheduler, mock_repository):
        mock_repository.fail_on["list_subscribed_ledgers"] = ConnectionError("database unavailable")

        report = await lifecycle_scheduler.run_refresh_sweep()

        assert report.processed == 0
        assert report.failures[0].stage == "list"
        assert report.finished_at is not None

    async def test_report_keeps_run_id(self, lifecycle_scheduler):
        tagged = await lifecycle_scheduler.run_refresh_sweep("run-42")
        untagged = await lifecycle_scheduler.run_refresh_sweep()

        assert tagged.run_id == "run-42"
        assert untagged.run_id and untagged.run_id != "run-42"
        assert lifecycle_scheduler.last_reports[SweepKind.REFRESH] is untagged


# =============================================================================
# Lifecycle sweep
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestLifecycleSweep:

    async def test_seven_day_warning(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=7, lifecycle_state=LifecycleState.ACTIVE,
        ))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.WARNED
        sent = mock_notifications.sent_to(ledger.user_id, NotificationKind.EXPIRY_WARNING)
        assert len(sent) == 1
        assert sent[0]["payload"]["days_left"] == 7
        assert sent[0]["payload"]["urgency"] == "notice"
        assert sent[0]["payload"]["plan_ref"] == plan.plan_id
        assert mock_repository.stored(ledger.user_id).window.lifecycle_state == LifecycleState.WARNED_T7

    async def test_warning_is_sent_once_per_state(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(clock.now(), plan, days_left=7))

        await lifecycle_scheduler.run_lifecycle_sweep()
        report = await lifecycle_scheduler.run_lifecycle_sweep()
        clock.advance(days=1)
        next_day = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.UNCHANGED
        assert next_day.outcomes[ledger.user_id] == SweepOutcome.UNCHANGED
        assert len(mock_notifications.sent_to(ledger.user_id)) == 1

    @pytest.mark.parametrize("days_left,urgency", [(3, "warning"), (1, "critical")])
    async def test_later_warnings(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan, days_left, urgency
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=days_left, lifecycle_state=LifecycleState.WARNED_T7,
        ))

        await lifecycle_scheduler.run_lifecycle_sweep()

        sent = mock_notifications.sent_to(ledger.user_id, NotificationKind.EXPIRY_WARNING)
        assert sent[0]["payload"]["urgency"] == urgency
        assert sent[0]["payload"]["days_left"] == days_left

    async def test_first_sweep_mid_warning_band_sends_nothing(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(clock.now(), plan, days_left=5))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.STATE_CHANGED
        assert mock_notifications.sent == []
        assert mock_repository.stored(ledger.user_id).window.lifecycle_state == LifecycleState.WARNED_T7

        clock.advance(days=2)
        await lifecycle_scheduler.run_lifecycle_sweep()

        sent = mock_notifications.sent_to(ledger.user_id, NotificationKind.EXPIRY_WARNING)
        assert [s["payload"]["days_left"] for s in sent] == [3]

    async def test_first_sweep_mid_reminder_band_sends_nothing(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=-5, active=False, auto_renew=False, daily_balance=0,
        ))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.STATE_CHANGED
        assert mock_notifications.sent == []
        assert mock_repository.stored(ledger.user_id).window.lifecycle_state == LifecycleState.POST_EXPIRY_3

        clock.advance(days=2)
        await lifecycle_scheduler.run_lifecycle_sweep()

        sent = mock_notifications.sent_to(ledger.user_id, NotificationKind.RENEWAL_REMINDER)
        assert [s["payload"]["tier"] for s in sent] == [7]

    async def test_expiry_deactivates_and_notifies(
        self, lifecycle_scheduler, mock_repository, mock_notifications, mock_event_bus, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=0, daily_balance=40,
            bonus=data_factory.make_bonus(15, clock.now()),
            lifecycle_state=LifecycleState.WARNED_T1,
        ))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.EXPIRED
        stored = mock_repository.stored(ledger.user_id)
        assert stored.window.active is False
        assert stored.daily_balance == 0
        assert stored.monthly_remaining == 0
        assert stored.bonus.amount == 15
        assert stored.window.lifecycle_state == LifecycleState.EXPIRED
        assert len(mock_notifications.sent_to(ledger.user_id, NotificationKind.SUBSCRIPTION_EXPIRED)) == 1
        assert len(mock_event_bus.get_published("subscription.expired")) == 1

    @pytest.mark.parametrize("days_left,tier,offer", [
        (-3, 3, "10% extra tokens"),
        (-7, 7, "10% extra tokens"),
        (-14, 14, "5% extra tokens"),
    ])
    async def test_win_back_reminders(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan, days_left, tier, offer
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=days_left, active=False, daily_balance=0,
            lifecycle_state=LifecycleState.EXPIRED,
        ))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.REMINDED
        sent = mock_notifications.sent_to(ledger.user_id, NotificationKind.RENEWAL_REMINDER)
        assert sent[0]["payload"]["tier"] == tier
        assert sent[0]["payload"]["offer"] == offer
        assert sent[0]["payload"]["days_since_expiry"] == -days_left

    async def test_dormant_is_silent(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=-20, active=False,
            lifecycle_state=LifecycleState.POST_EXPIRY_14,
        ))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.STATE_CHANGED
        assert mock_notifications.sent == []
        assert mock_repository.stored(ledger.user_id).window.lifecycle_state == LifecycleState.DORMANT

    async def test_missed_expiry_still_deactivates(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=-20, active=True, daily_balance=100,
            lifecycle_state=LifecycleState.WARNED_T1,
        ))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.DEACTIVATED
        stored = mock_repository.stored(ledger.user_id)
        assert stored.window.active is False
        assert stored.daily_balance == 0
        assert mock_notifications.sent == []

    async def test_inactive_window_gets_no_warning(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=5, active=False,
        ))

        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.STATE_CHANGED
        assert mock_notifications.sent == []

    async def test_undelivered_notification_is_retried_next_run(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=3, lifecycle_state=LifecycleState.WARNED_T7,
        ))
        mock_notifications.accept = False

        failed = await lifecycle_scheduler.run_lifecycle_sweep()

        assert failed.outcomes[ledger.user_id] == SweepOutcome.FAILED
        assert failed.failures[0].stage == "notify"
        assert mock_repository.stored(ledger.user_id).window.lifecycle_state == LifecycleState.WARNED_T7

        mock_notifications.accept = True
        retried = await lifecycle_scheduler.run_lifecycle_sweep()

        assert retried.outcomes[ledger.user_id] == SweepOutcome.WARNED
        assert mock_repository.stored(ledger.user_id).window.lifecycle_state == LifecycleState.WARNED_T3

    async def test_failed_expiry_notice_keeps_deactivation(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=0, lifecycle_state=LifecycleState.WARNED_T1,
        ))
        mock_notifications.error = RuntimeError("timeout")

        await lifecycle_scheduler.run_lifecycle_sweep()

        stored = mock_repository.stored(ledger.user_id)
        assert stored.window.active is False
        assert stored.daily_balance == 0
        assert stored.window.lifecycle_state == LifecycleState.WARNED_T1

        mock_notifications.error = None
        report = await lifecycle_scheduler.run_lifecycle_sweep()

        assert report.outcomes[ledger.user_id] == SweepOutcome.EXPIRED
        assert len(mock_notifications.sent_to(ledger.user_id, NotificationKind.SUBSCRIPTION_EXPIRED)) == 2

    async def test_full_lifecycle_sends_each_notice_once(
        self, lifecycle_scheduler, mock_repository, mock_notifications, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=10, auto_renew=False,
        ))

        for _ in range(31):
            await lifecycle_scheduler.run_lifecycle_sweep()
            clock.advance(days=1)

        sent = mock_notifications.sent_to(ledger.user_id)
        assert [(s["kind"], s["payload"].get("days_left", s["payload"].get("tier"))) for s in sent] == [
            (NotificationKind.EXPIRY_WARNING, 7),
            (NotificationKind.EXPIRY_WARNING, 3),
            (NotificationKind.EXPIRY_WARNING, 1),
            (NotificationKind.SUBSCRIPTION_EXPIRED, None),
            (NotificationKind.RENEWAL_REMINDER, 3),
            (NotificationKind.RENEWAL_REMINDER, 7),
            (NotificationKind.RENEWAL_REMINDER, 14),
        ]
        assert mock_repository.stored(ledger.user_id).window.lifecycle_state == LifecycleState.DORMANT


# =============================================================================
# Cron registration
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestSchedulerTimers:

    async def test_start_registers_both_sweeps(self, lifecycle_scheduler):
        lifecycle_scheduler.start()
        try:
            assert lifecycle_scheduler.running is True
            refresh = lifecycle_scheduler.scheduler.get_job(REFRESH_JOB_ID)
            lifecycle = lifecycle_scheduler.scheduler.get_job(LIFECYCLE_JOB_ID)
            assert refresh is not None and lifecycle is not None
            assert refresh.next_run_time.astimezone(SCHEDULER_TZ).hour == 1
            assert lifecycle.next_run_time.astimezone(SCHEDULER_TZ).hour == 9
            assert refresh.max_instances == 1
        finally:
            await lifecycle_scheduler.stop()

        assert lifecycle_scheduler.running is False

    async def test_stop_before_start_is_a_no_op(self, lifecycle_scheduler):
        await lifecycle_scheduler.stop()

        assert lifecycle_scheduler.running is False
