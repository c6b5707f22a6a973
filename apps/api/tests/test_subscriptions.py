from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.api_call_log import ApiCallLog
from models.enums import ApiCallStatus, BillingCycle, PaymentType, SubscriptionStatus
from models.payment_history import PaymentHistory
from services import subscriptions as subscription_service
from services import wallet as wallet_service
from services.clock import as_utc
from services.errors import (
    BusinessRuleError,
    ConcurrentUpdateError,
    InsufficientFundsError,
    NotFoundError,
    StateConflictError,
)


def test_billing_cycle_clamps_month_ends():
    jan_31 = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
    assert subscription_service.add_billing_cycle(jan_31, BillingCycle.MONTHLY) == datetime(
        2026, 2, 28, 9, 30, tzinfo=timezone.utc
    )
    leap_day = datetime(2028, 2, 29, tzinfo=timezone.utc)
    assert subscription_service.add_billing_cycle(leap_day, BillingCycle.YEARLY) == datetime(
        2029, 2, 28, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_first_subscription_charges_wallet_and_starts_fresh_period(db, plans, make_user, fund_wallet, now):
    await make_user("new-sub")
    await fund_wallet("new-sub", 500_000)

    result = await subscription_service.upgrade_plan(
        "new-sub", plans["BASIC"].id, BillingCycle.MONTHLY, db, now=now
    )

    subscription = result["subscription"]
    assert result["change"] == "new_subscription"
    assert result["deducted_amount"] == 99_000
    assert result["remaining_balance"] == 401_000
    assert subscription["status"] == SubscriptionStatus.ACTIVE
    assert subscription["requests_used"] == 0
    assert subscription["requests_limit"] == 750
    assert subscription["current_period_start"] == now
    assert subscription["current_period_end"] == subscription_service.add_billing_cycle(now, BillingCycle.MONTHLY)
    assert result["payment"]["type"] == PaymentType.SUBSCRIPTION
    assert result["payment"]["description"] == "Subscription Upgrade to Basic (Monthly)"
    assert result["payment"]["payment_method"] == "wallet_balance"


@pytest.mark.asyncio
async def test_upgrade_resets_usage_counter(db, plans, make_user, fund_wallet, make_subscription, now):
    await make_user("upgrader")
    await fund_wallet("upgrader", 300_000)
    await make_subscription("upgrader", plans["BASIC"], period_end=now + timedelta(days=12), requests_used=40)

    result = await subscription_service.upgrade_plan(
        "upgrader", plans["PRO"].id, BillingCycle.MONTHLY, db, now=now
    )

    assert result["change"] == "upgrade"
    assert result["subscription"]["plan"]["name"] == "PRO"
    assert result["subscription"]["requests_used"] == 0
    assert result["subscription"]["requests_limit"] == 5000
    assert result["remaining_balance"] == 1_000


@pytest.mark.asyncio
async def test_downgrade_is_locked_until_near_renewal(db, plans, make_user, fund_wallet, make_subscription, now):
    await make_user("downgrader")
    await fund_wallet("downgrader", 200_000)
    await make_subscription("downgrader", plans["PRO"], period_end=now + timedelta(days=20))

    with pytest.raises(BusinessRuleError) as exc_info:
        await subscription_service.upgrade_plan(
            "downgrader", plans["BASIC"].id, BillingCycle.MONTHLY, db, now=now
        )

    assert exc_info.value.message.startswith("Cannot downgrade with 20 days remaining")
    wallet = await wallet_service.get_or_create_wallet("downgrader", db)
    assert wallet.balance == 200_000


@pytest.mark.asyncio
async def test_downgrade_allowed_inside_lock_window(db, plans, make_user, fund_wallet, make_subscription, now):
    await make_user("late-downgrader")
    await fund_wallet("late-downgrader", 200_000)
    await make_subscription("late-downgrader", plans["PRO"], period_end=now + timedelta(days=5))

    result = await subscription_service.upgrade_plan(
        "late-downgrader", plans["BASIC"].id, BillingCycle.MONTHLY, db, now=now
    )

    assert result["change"] == "downgrade"
    assert result["subscription"]["plan"]["name"] == "BASIC"
    assert result["remaining_balance"] == 101_000


@pytest.mark.asyncio
async def test_same_plan_and_cycle_is_rejected(db, plans, make_user, fund_wallet, make_subscription, now):
    await make_user("same-plan")
    await fund_wallet("same-plan", 1_000_000)
    await make_subscription("same-plan", plans["BASIC"], period_end=now + timedelta(days=3))

    with pytest.raises(BusinessRuleError) as exc_info:
        await subscription_service.validate_upgrade_request(
            "same-plan", plans["BASIC"].id, BillingCycle.MONTHLY, db, now=now
        )
    assert exc_info.value.message == "You are already subscribed to this plan"

    change = await subscription_service.validate_upgrade_request(
        "same-plan", plans["BASIC"].id, BillingCycle.YEARLY, db, now=now
    )
    assert change.kind == "cycle_change"
    assert change.price == 990_000


@pytest.mark.asyncio
async def test_insufficient_balance_creates_nothing(db, plans, make_user, fund_wallet, now):
    await make_user("broke-user")
    await fund_wallet("broke-user", 10_000)

    with pytest.raises(InsufficientFundsError):
        await subscription_service.upgrade_plan(
            "broke-user", plans["PRO"].id, BillingCycle.MONTHLY, db, now=now
        )

    assert await subscription_service.get_subscription("broke-user", db) is None
    payments = (
        await db.execute(select(PaymentHistory).where(PaymentHistory.type == PaymentType.SUBSCRIPTION))
    ).scalars().all()
    assert payments == []


@pytest.mark.asyncio
async def test_unknown_plan_is_not_found(db, plans, make_user):
    await make_user("lost-user")
    with pytest.raises(NotFoundError):
        await subscription_service.validate_upgrade_request("lost-user", "no-such-plan", BillingCycle.MONTHLY, db)


@pytest.mark.asyncio
async def test_free_plan_does_not_touch_wallet(db, plans, make_user, now):
    await make_user("free-user")

    result = await subscription_service.upgrade_plan("free-user", plans["FREE"].id, BillingCycle.MONTHLY, db, now=now)

    assert result["payment"] is None
    assert result["deducted_amount"] == 0
    assert result["subscription"]["requests_limit"] == 50


@pytest.mark.asyncio
async def test_suspended_subscription_is_treated_as_new(db, plans, make_user, make_subscription, now):
    await make_user("suspended-user")
    subscription = await make_subscription(
        "suspended-user",
        plans["PRO"],
        period_end=now + timedelta(days=20),
        status=SubscriptionStatus.SUSPENDED,
    )

    change = subscription_service.classify_plan_change(subscription, plans["BASIC"], BillingCycle.MONTHLY, now)
    assert change.kind == "new_subscription"


@pytest.mark.asyncio
async def test_preview_reports_rule_violations_without_raising(
    db, plans, make_user, fund_wallet, make_subscription, now
):
    await make_user("preview-user")
    await fund_wallet("preview-user", 50_000)

    preview = await subscription_service.get_upgrade_preview(
        "preview-user", plans["PRO"].id, BillingCycle.MONTHLY, db, now=now
    )

    assert preview["is_valid"] is False
    assert preview["error_message"].startswith("Insufficient wallet balance")
    assert preview["wallet"]["remaining_after_upgrade"] == 50_000 - 299_000
    assert preview["wallet"]["can_afford"] is False

    affordability = await subscription_service.can_user_afford_plan(
        "preview-user", plans["BASIC"].id, BillingCycle.MONTHLY, db
    )
    assert affordability == {"can_afford": False, "price": 99_000, "balance": 50_000, "shortfall": 49_000}


@pytest.mark.asyncio
async def test_cancel_immediately_is_terminal(db, plans, make_user, make_subscription, now):
    await make_user("quitter")
    await make_subscription("quitter", plans["BASIC"], period_end=now + timedelta(days=10))

    result = await subscription_service.cancel_subscription("quitter", db, immediately=True, now=now)
    assert result["status"] == SubscriptionStatus.CANCELED
    assert result["auto_renew"] is False
    assert result["message"] == "Subscription cancelled immediately"

    with pytest.raises(StateConflictError):
        await subscription_service.cancel_subscription("quitter", db)
    with pytest.raises(StateConflictError):
        await subscription_service.toggle_auto_renew("quitter", True, db)


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_access(db, plans, make_user, make_subscription, now):
    await make_user("planner")
    await make_subscription("planner", plans["BASIC"], period_end=now + timedelta(days=10))

    result = await subscription_service.cancel_subscription("planner", db, now=now)

    assert result["status"] == SubscriptionStatus.ACTIVE
    assert result["cancel_at_period_end"] is True
    assert result["auto_renew"] is False
    assert result["message"].startswith("Subscription will be cancelled on ")


@pytest.mark.asyncio
async def test_toggle_auto_renew_round_trip(db, plans, make_user, make_subscription, now):
    await make_user("toggler")
    await make_subscription("toggler", plans["BASIC"], period_end=now + timedelta(days=10))

    off = await subscription_service.toggle_auto_renew("toggler", False, db)
    assert off["auto_renew"] is False
    assert off["cancel_at_period_end"] is True

    on = await subscription_service.toggle_auto_renew("toggler", True, db)
    assert on["auto_renew"] is True
    assert on["cancel_at_period_end"] is False
    assert on["version"] == 3


@pytest.mark.asyncio
async def test_current_subscription_reflects_logged_usage(db, plans, make_user, make_subscription, now):
    await make_user("usage-user")
    subscription = await make_subscription(
        "usage-user",
        plans["BASIC"],
        period_start=now - timedelta(days=5),
        period_end=now + timedelta(days=25),
        requests_used=99,
    )
    for status in (ApiCallStatus.SUCCESS, ApiCallStatus.SUCCESS, ApiCallStatus.SUCCESS, ApiCallStatus.FAILED):
        db.add(
            ApiCallLog(
                user_id="usage-user",
                endpoint="/v1/generate",
                status=status,
                created_at=now - timedelta(days=1),
            )
        )
    db.add(
        ApiCallLog(
            user_id="usage-user",
            endpoint="/v1/generate",
            status=ApiCallStatus.SUCCESS,
            created_at=as_utc(subscription.current_period_start) - timedelta(seconds=1),
        )
    )
    await db.commit()

    current = await subscription_service.get_current_subscription("usage-user", db)

    assert current["requests_used"] == 3
    assert current["requests_remaining"] == 747
    assert current["usage_percentage"] == 0


@pytest.mark.asyncio
async def test_write_paths_return_reconciled_usage(db, plans, make_user, make_subscription, now):
    await make_user("write-usage")
    await make_subscription(
        "write-usage",
        plans["PRO"],
        period_start=now - timedelta(days=3),
        period_end=now + timedelta(days=27),
    )
    for _ in range(3):
        db.add(
            ApiCallLog(
                user_id="write-usage",
                endpoint="/v1/generate",
                status=ApiCallStatus.SUCCESS,
                created_at=now - timedelta(hours=2),
            )
        )
    await db.commit()

    toggled = await subscription_service.toggle_auto_renew("write-usage", False, db)
    assert toggled["requests_used"] == 3

    canceled = await subscription_service.cancel_subscription("write-usage", db, now=now)
    assert canceled["requests_used"] == 3
    assert canceled["requests_remaining"] == plans["PRO"].monthly_requests - 3


@pytest.mark.asyncio
async def test_renewal_racing_a_cancel_loses_on_the_version_check(
    db, session_maker, plans, make_user, fund_wallet, make_subscription, now
):
    await make_user("racing-renewal")
    await fund_wallet("racing-renewal", 200_000)
    await make_subscription("racing-renewal", plans["BASIC"], period_end=now + timedelta(hours=2))

    async with session_maker() as renewing:
        stale = await subscription_service.get_subscription("racing-renewal", renewing)
        assert stale.version == 1

        await subscription_service.cancel_subscription("racing-renewal", db, now=now)

        with pytest.raises(ConcurrentUpdateError):
            await subscription_service.process_auto_renew("racing-renewal", renewing, now=now)

    async with session_maker() as fresh:
        wallet = await wallet_service.get_or_create_wallet("racing-renewal", fresh)
        assert wallet.balance == 200_000
        charges = await fresh.execute(
            select(PaymentHistory).where(
                PaymentHistory.user_id == "racing-renewal",
                PaymentHistory.type == PaymentType.SUBSCRIPTION,
            )
        )
        assert charges.scalars().all() == []

        subscription = await subscription_service.get_subscription("racing-renewal", fresh)
        assert subscription.version == 2
        assert subscription.auto_renew is False
        assert subscription.cancel_at_period_end is True


@pytest.mark.asyncio
async def test_billing_history_and_overview(db, plans, make_user, fund_wallet, now):
    await make_user("history-user")
    await fund_wallet("history-user", 150_000)
    await subscription_service.upgrade_plan("history-user", plans["BASIC"].id, BillingCycle.MONTHLY, db, now=now)

    history = await subscription_service.get_billing_history("history-user", db)
    assert history["total"] == 2

    overview = await subscription_service.get_billing_overview("history-user", db)
    assert overview["total_spent"] == 99_000
    assert overview["current_subscription"]["plan"]["name"] == "BASIC"
    assert as_utc(overview["next_billing_date"]) == subscription_service.add_billing_cycle(now, BillingCycle.MONTHLY)
