from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.domain.errors import Conflict, NotFound, QuotaExceeded, ValidationError
from backend.app.models import (
    PAYMENT_STATUSES,
    PRICING_TYPES,
    SUBSCRIPTION_OPEN_STATUSES,
    SUBSCRIPTION_STATUSES,
    PricingPlan,
    SubscriberProfile,
    Subscription,
    utcnow,
)
from backend.app.integrations.messaging import normalize_phone_number
from backend.app.services.audit_service import log_audit_event


logger = logging.getLogger(__name__)

# pending -> active -> {cancelled, expired}; pending -> cancelled
ALLOWED_TRANSITIONS = {
    "pending": {"active", "cancelled"},
    "active": {"cancelled", "expired"},
    "cancelled": set(),
    "expired": set(),
}

ADMIN_EDITABLE_FIELDS = {
    "status",
    "payment_status",
    "payment_reference",
    "amount_paid",
    "pips_purchased",
    "pips_used",
    "start_date",
    "end_date",
}

DEFAULT_PRICING = {
    "monthly": {"price": 50.0, "description": "Monthly access to all trading signals"},
    "per_pip": {"price": 1.0, "description": "Pay per pip of signal performance"},
}


def monthly_plan_days() -> int:
    return int(os.getenv("MONTHLY_PLAN_DAYS", "30"))


def _require_subscription(db: Session, subscription_id: str) -> Subscription:
    sub = db.get(Subscription, subscription_id)
    if not sub:
        raise NotFound("subscription not found", context={"subscription_id": subscription_id})
    return sub


def _state(sub: Subscription) -> Dict[str, Any]:
    return {
        "status": sub.status,
        "payment_status": sub.payment_status,
        "payment_reference": sub.payment_reference,
        "amount_paid": sub.amount_paid,
        "pips_purchased": sub.pips_purchased,
        "pips_used": sub.pips_used,
        "start_date": sub.start_date,
        "end_date": sub.end_date,
    }


# -------------------------
# Pricing
# -------------------------

def ensure_default_pricing_plans(db: Session) -> List[PricingPlan]:
    existing = {plan.pricing_type: plan for plan in db.execute(select(PricingPlan)).scalars().all()}
    for pricing_type in PRICING_TYPES:
        if pricing_type in existing:
            continue
        defaults = DEFAULT_PRICING[pricing_type]
        plan = PricingPlan(
            pricing_type=pricing_type,
            price=defaults["price"],
            currency="USD",
            description=defaults["description"],
            is_active=True,
        )
        db.add(plan)
        existing[pricing_type] = plan
    db.flush()
    return [existing[pricing_type] for pricing_type in PRICING_TYPES]


def list_pricing_plans(db: Session) -> List[PricingPlan]:
    return db.execute(select(PricingPlan).order_by(PricingPlan.pricing_type.asc())).scalars().all()


def update_pricing_plan(
    db: Session,
    pricing_type: str,
    *,
    actor: str,
    price: Optional[float] = None,
    description: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> PricingPlan:
    if pricing_type not in PRICING_TYPES:
        raise ValidationError("invalid pricing type", context={"pricing_type": pricing_type})
    plan = db.execute(select(PricingPlan).where(PricingPlan.pricing_type == pricing_type)).scalars().first()
    if not plan:
        raise NotFound("pricing plan not found", context={"pricing_type": pricing_type})
    if price is not None and price < 0:
        raise ValidationError("price must not be negative")

    before = {"price": plan.price, "description": plan.description, "is_active": plan.is_active}
    if price is not None:
        plan.price = price
    if description is not None:
        plan.description = description
    if is_active is not None:
        plan.is_active = is_active
    plan.updated_at = utcnow()
    db.flush()

    log_audit_event(
        db,
        entity_type="pricing_plan",
        entity_id=plan.id,
        event_type="pricing_updated",
        actor=actor,
        before=before,
        after={"price": plan.price, "description": plan.description, "is_active": plan.is_active},
    )
    return plan


# -------------------------
# Subscription lifecycle
# -------------------------

def create_subscription(
    db: Session,
    *,
    user_id: str,
    pricing_id: str,
    plan_type: str,
    pips_purchased: int = 0,
) -> Subscription:
    if plan_type not in PRICING_TYPES:
        raise ValidationError("invalid plan type", context={"plan_type": plan_type})
    plan = db.get(PricingPlan, pricing_id)
    if not plan:
        raise NotFound("pricing plan not found", context={"pricing_id": pricing_id})
    if plan.pricing_type != plan_type:
        raise ValidationError(
            "plan type does not match pricing plan",
            context={"plan_type": plan_type, "pricing_type": plan.pricing_type},
        )
    if not plan.is_active:
        raise ValidationError("pricing plan is not active", context={"pricing_id": pricing_id})
    if pips_purchased < 0 or (plan_type == "monthly" and pips_purchased):
        raise ValidationError("pips_purchased is only valid as a non-negative count on per_pip plans")

    sub = Subscription(
        user_id=user_id,
        pricing_id=plan.id,
        subscription_type=plan_type,
        status="pending",
        payment_status="pending",
        amount_paid=plan.price,
        pips_purchased=pips_purchased,
        pips_used=0,
    )
    try:
        with db.begin_nested():
            db.add(sub)
            db.flush()
    except IntegrityError as exc:
        raise Conflict(
            "user already has a pending or active subscription",
            context={"user_id": user_id},
        ) from exc
    return sub


def confirm_payment(
    db: Session,
    subscription_id: str,
    *,
    payment_reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    sub = _require_subscription(db, subscription_id)
    if sub.payment_status == "completed" and sub.status == "active":
        if payment_reference and sub.payment_reference and payment_reference != sub.payment_reference:
            raise Conflict(
                "subscription already activated by a different payment",
                context={"subscription_id": sub.id},
            )
        return sub
    if sub.status != "pending":
        raise Conflict(
            f"cannot confirm payment for a {sub.status} subscription",
            context={"subscription_id": sub.id, "status": sub.status},
        )

    started = now or utcnow()
    sub.payment_status = "completed"
    sub.payment_reference = payment_reference
    sub.status = "active"
    sub.start_date = started
    if sub.subscription_type == "monthly":
        sub.end_date = started + timedelta(days=monthly_plan_days())
    sub.updated_at = utcnow()
    db.flush()
    return sub


def consume_pips(db: Session, subscription_id: str, amount: int) -> Subscription:
    if amount <= 0:
        raise ValidationError("amount must be a positive number of pips", context={"amount": amount})

    result = db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.subscription_type == "per_pip",
            Subscription.status == "active",
            Subscription.pips_used + amount <= Subscription.pips_purchased,
        )
        .values(pips_used=Subscription.pips_used + amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    sub = _require_subscription(db, subscription_id)
    db.refresh(sub)
    if result.rowcount == 1:
        return sub

    if sub.subscription_type != "per_pip":
        raise ValidationError("pip consumption only applies to per_pip plans", context={"subscription_id": sub.id})
    if sub.status != "active":
        raise Conflict(
            f"cannot consume pips on a {sub.status} subscription",
            context={"subscription_id": sub.id, "status": sub.status},
        )
    raise QuotaExceeded(
        "pip consumption exceeds purchased amount",
        context={
            "subscription_id": sub.id,
            "pips_purchased": sub.pips_purchased,
            "pips_used": sub.pips_used,
            "requested": amount,
        },
    )


def _transition(db: Session, subscription_id: str, target: str, *, actor: str, now: Optional[datetime]) -> Subscription:
    sub = _require_subscription(db, subscription_id)
    if target not in ALLOWED_TRANSITIONS[sub.status]:
        raise Conflict(
            f"cannot move subscription from {sub.status} to {target}",
            context={"subscription_id": sub.id, "status": sub.status},
        )
    before = _state(sub)
    sub.status = target
    sub.end_date = now or utcnow()
    sub.updated_at = utcnow()
    db.flush()
    log_audit_event(
        db,
        entity_type="subscription",
        entity_id=sub.id,
        event_type=f"subscription_{target}",
        actor=actor,
        before=before,
        after=_state(sub),
    )
    return sub


def cancel_subscription(
    db: Session, subscription_id: str, *, actor: str = "system", now: Optional[datetime] = None
) -> Subscription:
    return _transition(db, subscription_id, "cancelled", actor=actor, now=now)


def expire_subscription(
    db: Session, subscription_id: str, *, actor: str = "system", now: Optional[datetime] = None
) -> Subscription:
    return _transition(db, subscription_id, "expired", actor=actor, now=now)


def expire_due_subscriptions(db: Session, *, now: datetime) -> List[str]:
    due_ids = (
        db.execute(
            select(Subscription.id).where(
                Subscription.status == "active",
                Subscription.subscription_type == "monthly",
                Subscription.end_date.is_not(None),
                Subscription.end_date <= now,
            )
        )
        .scalars()
        .all()
    )
    for subscription_id in due_ids:
        sub = _require_subscription(db, subscription_id)
        before = _state(sub)
        sub.status = "expired"
        sub.updated_at = utcnow()
        log_audit_event(
            db,
            entity_type="subscription",
            entity_id=sub.id,
            event_type="subscription_expired",
            actor="system",
            reason="end_date reached",
            before=before,
            after=_state(sub),
        )
    db.flush()
    if due_ids:
        logger.info("Expired %s monthly subscriptions past end_date", len(due_ids))
    return list(due_ids)


def admin_update_subscription(
    db: Session,
    subscription_id: str,
    *,
    fields: Mapping[str, Any],
    actor: str,
    reason: Optional[str] = None,
) -> Subscription:
    unknown = sorted(set(fields) - ADMIN_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError("fields are not editable", context={"fields": unknown})
    if "status" in fields and fields["status"] not in SUBSCRIPTION_STATUSES:
        raise ValidationError("invalid subscription status", context={"status": fields["status"]})
    if "payment_status" in fields and fields["payment_status"] not in PAYMENT_STATUSES:
        raise ValidationError("invalid payment status", context={"payment_status": fields["payment_status"]})
    for key in ("amount_paid", "pips_purchased", "pips_used"):
        if key in fields and (fields[key] is None or fields[key] < 0):
            raise ValidationError(f"{key} must be a non-negative number")

    sub = _require_subscription(db, subscription_id)
    pips_purchased = fields.get("pips_purchased", sub.pips_purchased)
    pips_used = fields.get("pips_used", sub.pips_used)
    if pips_used > pips_purchased:
        raise ValidationError(
            "pips_used cannot exceed pips_purchased",
            context={"pips_used": pips_used, "pips_purchased": pips_purchased},
        )

    before = _state(sub)
    user_id = sub.user_id
    try:
        with db.begin_nested():
            for key, value in fields.items():
                setattr(sub, key, value)
            sub.updated_at = utcnow()
            db.flush()
    except IntegrityError as exc:
        raise Conflict(
            "user already has a pending or active subscription",
            context={"user_id": user_id},
        ) from exc

    log_audit_event(
        db,
        entity_type="subscription",
        entity_id=sub.id,
        event_type="subscription_admin_update",
        actor=actor,
        reason=reason,
        before=before,
        after=_state(sub),
    )
    return sub


# -------------------------
# Queries
# -------------------------

def get_subscription(db: Session, subscription_id: str) -> Subscription:
    return _require_subscription(db, subscription_id)


def list_subscriptions(db: Session, *, status: Optional[str] = None, user_id: Optional[str] = None) -> List[Subscription]:
    stmt = select(Subscription)
    if status:
        stmt = stmt.where(Subscription.status == status)
    if user_id:
        stmt = stmt.where(Subscription.user_id == user_id)
    return db.execute(stmt.order_by(Subscription.created_at.desc(), Subscription.id.desc())).scalars().all()


def list_active_subscriptions(db: Session) -> List[Subscription]:
    return (
        db.execute(
            select(Subscription)
            .where(Subscription.status == "active")
            .order_by(Subscription.created_at.asc(), Subscription.id.asc())
        )
        .scalars()
        .all()
    )


def open_subscription_for_user(db: Session, user_id: str) -> Optional[Subscription]:
    return (
        db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.status.in_(SUBSCRIPTION_OPEN_STATUSES),
            )
        )
        .scalars()
        .first()
    )


def subscription_stats(db: Session) -> Dict[str, Any]:
    total = db.execute(select(func.count(Subscription.id))).scalar() or 0
    revenue = (
        db.execute(
            select(func.coalesce(func.sum(Subscription.amount_paid), 0.0)).where(
                Subscription.payment_status == "completed"
            )
        ).scalar()
        or 0.0
    )
    active_by_type = dict(
        db.execute(
            select(Subscription.subscription_type, func.count(Subscription.id))
            .where(Subscription.status == "active")
            .group_by(Subscription.subscription_type)
        ).all()
    )
    return {
        "total_subscriptions": int(total),
        "active_subscriptions": int(sum(active_by_type.values())),
        "total_revenue": round(float(revenue), 2),
        "monthly_subscribers": int(active_by_type.get("monthly", 0)),
        "per_pip_subscribers": int(active_by_type.get("per_pip", 0)),
    }


# -------------------------
# Subscriber contact
# -------------------------

def get_subscriber_profile(db: Session, user_id: str) -> Optional[SubscriberProfile]:
    return db.get(SubscriberProfile, user_id)


def profiles_for_users(db: Session, user_ids: Iterable[str]) -> Dict[str, SubscriberProfile]:
    wanted = sorted(set(user_ids))
    if not wanted:
        return {}
    rows = db.execute(select(SubscriberProfile).where(SubscriberProfile.user_id.in_(wanted))).scalars().all()
    return {profile.user_id: profile for profile in rows}


def deliverable_contact(profile: Optional[SubscriberProfile]) -> Optional[str]:
    """The number external delivery may use, or None when the subscriber is unreachable."""
    if profile and profile.phone_number and profile.phone_verified and profile.messaging_enabled:
        return profile.phone_number
    return None


def upsert_subscriber_profile(
    db: Session,
    user_id: str,
    *,
    phone_number: Optional[str] = None,
    messaging_enabled: Optional[bool] = None,
    phone_verified: Optional[bool] = None,
) -> SubscriberProfile:
    """
    Record the contact used for external delivery.

    Changing the number clears verification unless `phone_verified` is given.
    """
    profile = db.get(SubscriberProfile, user_id)
    if profile is None:
        profile = SubscriberProfile(user_id=user_id, phone_verified=False, messaging_enabled=True)
        db.add(profile)

    if phone_number is not None:
        normalized = normalize_phone_number(phone_number)
        if phone_number and not normalized:
            raise ValidationError("phone number must contain digits", context={"phone_number": phone_number})
        if normalized != (profile.phone_number or ""):
            profile.phone_number = normalized or None
            profile.phone_verified = False
    if messaging_enabled is not None:
        profile.messaging_enabled = messaging_enabled
    if phone_verified is not None:
        profile.phone_verified = phone_verified
    profile.updated_at = utcnow()
    db.flush()
    return profile
