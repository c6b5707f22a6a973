from datetime import timedelta

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from models.enums import DiscountType
from models.promo_code import PromoCode
from models.promo_usage import PromoUsage
from services import promo as promo_service
from services import wallet as wallet_service
from services.errors import (
    BillingValidationError,
    BusinessRuleError,
    NotFoundError,
    StateConflictError,
)


def _promo_payload(now, **overrides):
    payload = {
        "code": "save10",
        "name": "Save 10%",
        "discount_type": DiscountType.PERCENTAGE,
        "discount_value": 10,
        "max_discount": 5_000,
        "min_amount": 10_000,
        "max_usage": -1,
        "max_usage_per_user": 1,
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=30),
    }
    payload.update(overrides)
    return payload


async def _redeem(user_id, promo_id, discount, db):
    entry = await wallet_service.credit(
        user_id,
        50_000,
        db,
        description="Automatic Topup by Midtrans",
        payment_method="midtrans_automatic",
    )
    usage = await promo_service.apply_promo_code(user_id, promo_id, entry.id, discount, db)
    await db.commit()
    return usage


@pytest.mark.asyncio
async def test_percentage_discount_is_capped(db, make_user, now):
    await make_user("promo-user")
    created = await promo_service.create_promo_code(_promo_payload(now), "admin-1", db)
    assert created["code"] == "SAVE10"

    validation = await promo_service.validate_promo_code("save10", 100_000, "promo-user", db)
    assert validation.is_valid is True
    assert validation.discount_amount == 5_000

    small = await promo_service.validate_promo_code("SAVE10", 20_000, "promo-user", db)
    assert small.discount_amount == 2_000


@pytest.mark.asyncio
async def test_minimum_amount_is_reported_in_rupiah(db, make_user, now):
    await make_user("promo-min")
    await promo_service.create_promo_code(_promo_payload(now), "admin-1", db)

    validation = await promo_service.validate_promo_code("SAVE10", 9_999, "promo-min", db)
    assert validation.is_valid is False
    assert validation.error_message == "Minimum amount is Rp 10.000"
    assert validation.to_dict() == {"is_valid": False, "error_message": "Minimum amount is Rp 10.000"}


@pytest.mark.asyncio
async def test_inactive_or_out_of_window_codes_are_invalid(db, make_user, now):
    await make_user("promo-window")
    await promo_service.create_promo_code(_promo_payload(now, code="OFF", is_active=False), "admin-1", db)
    await promo_service.create_promo_code(
        _promo_payload(now, code="LATER", valid_from=now + timedelta(days=2), valid_until=now + timedelta(days=9)),
        "admin-1",
        db,
    )

    for code in ("OFF", "LATER", "MISSING"):
        validation = await promo_service.validate_promo_code(code, 100_000, "promo-window", db)
        assert validation.is_valid is False
        assert validation.error_message == "Invalid or expired promo code"


@pytest.mark.asyncio
async def test_per_user_limit_blocks_second_redemption(db, make_user, now):
    await make_user("promo-repeat")
    created = await promo_service.create_promo_code(_promo_payload(now), "admin-1", db)

    await _redeem("promo-repeat", created["id"], 5_000, db)

    validation = await promo_service.validate_promo_code("SAVE10", 100_000, "promo-repeat", db)
    assert validation.error_message == "You have already used this promo code"

    with pytest.raises(StateConflictError):
        await _redeem("promo-repeat", created["id"], 5_000, db)
    await db.rollback()

    promo = await db.get(PromoCode, created["id"], populate_existing=True)
    assert promo.current_usage == 1


@pytest.mark.asyncio
async def test_global_limit_is_enforced_at_redemption(db, make_user, now):
    await make_user("first-buyer")
    await make_user("second-buyer")
    created = await promo_service.create_promo_code(_promo_payload(now, max_usage=1), "admin-1", db)

    await _redeem("first-buyer", created["id"], 5_000, db)

    validation = await promo_service.validate_promo_code("SAVE10", 100_000, "second-buyer", db)
    assert validation.error_message == "Promo code usage limit exceeded"

    with pytest.raises(StateConflictError):
        await _redeem("second-buyer", created["id"], 5_000, db)
    await db.rollback()

    promo = await db.get(PromoCode, created["id"], populate_existing=True)
    usages = (await db.execute(select(func.count(PromoUsage.id)))).scalar()
    assert promo.current_usage == 1
    assert usages == 1


@pytest.mark.asyncio
async def test_fixed_discount_is_not_clamped_to_amount(db, now):
    await promo_service.create_promo_code(
        _promo_payload(now, code="FLAT20", discount_type=DiscountType.FIXED, discount_value=20_000, min_amount=0),
        "admin-1",
        db,
    )
    promo = (await db.execute(select(PromoCode).where(PromoCode.code == "FLAT20"))).scalar_one()

    assert promo_service.compute_discount(promo, 15_000) == 20_000


@pytest.mark.asyncio
async def test_create_rejects_duplicates_and_bad_values(db, now):
    await promo_service.create_promo_code(_promo_payload(now), "admin-1", db)

    with pytest.raises(StateConflictError):
        await promo_service.create_promo_code(_promo_payload(now, code=" Save10 "), "admin-1", db)
    with pytest.raises(BillingValidationError):
        await promo_service.create_promo_code(_promo_payload(now, code="HUGE", discount_value=150), "admin-1", db)
    with pytest.raises(BillingValidationError):
        await promo_service.create_promo_code(
            _promo_payload(now, code="BACKWARDS", valid_until=now - timedelta(days=2)),
            "admin-1",
            db,
        )


@pytest.mark.asyncio
async def test_used_codes_cannot_be_deleted(db, make_user, now):
    await make_user("promo-delete")
    used = await promo_service.create_promo_code(_promo_payload(now), "admin-1", db)
    unused = await promo_service.create_promo_code(_promo_payload(now, code="SPARE"), "admin-1", db)
    await _redeem("promo-delete", used["id"], 5_000, db)

    with pytest.raises(BusinessRuleError):
        await promo_service.delete_promo_code(used["id"], db)

    result = await promo_service.delete_promo_code(unused["id"], db)
    assert result["message"] == "Promo code deleted successfully"
    with pytest.raises(NotFoundError):
        await promo_service.get_promo_code(unused["id"], db)


@pytest.mark.asyncio
async def test_stats_aggregate_redemptions(db, make_user, now):
    await make_user("stats-a")
    await make_user("stats-b")
    created = await promo_service.create_promo_code(_promo_payload(now), "admin-1", db)
    await _redeem("stats-a", created["id"], 5_000, db)
    await _redeem("stats-b", created["id"], 3_000, db)

    stats = (await promo_service.get_promo_code_stats(created["id"], db))["stats"]
    assert stats["total_usage"] == 2
    assert stats["total_discount_given"] == 8_000
    assert stats["unique_users"] == 2
    assert stats["average_discount_per_usage"] == 4_000
    assert sum(day["count"] for day in stats["usage_by_day"]) == 2

    listing = await promo_service.list_promo_codes(db)
    assert listing["promo_codes"][0]["total_discount_given"] == 8_000
    assert listing["pagination"]["total"] == 1
