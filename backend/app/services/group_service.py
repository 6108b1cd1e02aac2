from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.domain.clock import Clock, month_key
from backend.app.domain.errors import Conflict, ExternalServiceError, NotFound
from backend.app.integrations.base import DeliveryOutcome, MessagingGateway
from backend.app.models import DeliveryGroup, DeliveryGroupMember, Subscription
from backend.app.services import subscription_service
from backend.app.services.audit_service import log_audit_event


logger = logging.getLogger(__name__)

# one retry against the next candidate (or a new group) after a lost race
MAX_ASSIGN_ATTEMPTS = 2


def default_max_members() -> int:
    return int(os.getenv("DELIVERY_GROUP_MAX_MEMBERS", "1024"))


def group_base_name() -> str:
    return os.getenv("DELIVERY_GROUP_NAME", "Signal Subscribers")


@dataclass(frozen=True)
class Assignment:
    user_id: str
    group_id: str
    group_number: int
    created_group: bool
    already_assigned: bool = False


@dataclass(frozen=True)
class RefreshSummary:
    month_key: str
    migrated: int
    groups_touched: int
    groups_created: int
    groups_retired: int
    failed: int
    error: Optional[str]
    members_added: int = 0
    member_add_failed: int = 0


def current_month_key(clock: Clock) -> str:
    return month_key(clock.now())


def list_groups(db: Session, *, month_key: Optional[str] = None, active_only: bool = False) -> List[DeliveryGroup]:
    stmt = select(DeliveryGroup)
    if month_key:
        stmt = stmt.where(DeliveryGroup.month_key == month_key)
    if active_only:
        stmt = stmt.where(DeliveryGroup.is_active.is_(True))
    stmt = stmt.order_by(DeliveryGroup.month_key.desc(), DeliveryGroup.group_number.asc())
    return db.execute(stmt).scalars().all()


def list_members(db: Session, group_id: str) -> List[DeliveryGroupMember]:
    if db.get(DeliveryGroup, group_id) is None:
        raise NotFound("delivery group not found", context={"group_id": group_id})
    return (
        db.execute(
            select(DeliveryGroupMember)
            .where(DeliveryGroupMember.group_id == group_id)
            .order_by(DeliveryGroupMember.created_at.asc(), DeliveryGroupMember.id.asc())
        )
        .scalars()
        .all()
    )


def retire_past_groups(db: Session, current_key: str) -> int:
    result = db.execute(
        update(DeliveryGroup)
        .where(DeliveryGroup.month_key != current_key, DeliveryGroup.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    retired = result.rowcount or 0
    if retired:
        log_audit_event(
            db,
            entity_type="delivery_group",
            entity_id=None,
            event_type="groups_retired",
            actor="system",
            after={"month_key": current_key, "retired": retired},
        )
    return retired


def eligible_subscribers(db: Session, current_key: str) -> List[str]:
    assigned = (
        select(DeliveryGroupMember.id)
        .where(
            DeliveryGroupMember.user_id == Subscription.user_id,
            DeliveryGroupMember.month_key == current_key,
        )
        .exists()
    )
    rows = db.execute(
        select(Subscription.user_id)
        .where(Subscription.status == "active", ~assigned)
        .order_by(Subscription.start_date.asc(), Subscription.created_at.asc(), Subscription.id.asc())
    ).scalars().all()
    seen: set[str] = set()
    ordered: List[str] = []
    for user_id in rows:
        if user_id not in seen:
            seen.add(user_id)
            ordered.append(user_id)
    return ordered


def _existing_assignment(db: Session, user_id: str, current_key: str) -> Optional[Assignment]:
    row = db.execute(
        select(DeliveryGroupMember, DeliveryGroup)
        .join(DeliveryGroup, DeliveryGroup.id == DeliveryGroupMember.group_id)
        .where(DeliveryGroupMember.user_id == user_id, DeliveryGroupMember.month_key == current_key)
    ).first()
    if not row:
        return None
    member, group = row
    return Assignment(
        user_id=member.user_id,
        group_id=group.id,
        group_number=group.group_number,
        created_group=False,
        already_assigned=True,
    )


def _next_open_group(db: Session, current_key: str, exclude: set[str]) -> Optional[DeliveryGroup]:
    stmt = (
        select(DeliveryGroup)
        .where(
            DeliveryGroup.month_key == current_key,
            DeliveryGroup.is_active.is_(True),
            DeliveryGroup.member_count < DeliveryGroup.max_members,
        )
        .order_by(DeliveryGroup.group_number.asc())
    )
    if exclude:
        stmt = stmt.where(DeliveryGroup.id.not_in(exclude))
    return db.execute(stmt).scalars().first()


def try_append(db: Session, group_id: str, current_key: str) -> bool:
    """Atomic "member_count += 1 iff member_count < max_members"."""
    result = db.execute(
        update(DeliveryGroup)
        .where(
            DeliveryGroup.id == group_id,
            DeliveryGroup.month_key == current_key,
            DeliveryGroup.is_active.is_(True),
            DeliveryGroup.member_count < DeliveryGroup.max_members,
        )
        .values(member_count=DeliveryGroup.member_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def provision_group(
    db: Session,
    *,
    gateway: MessagingGateway,
    current_key: str,
    max_members: int,
) -> Optional[DeliveryGroup]:
    """
    Create the next-numbered group for the month.

    Raises ExternalServiceError if the gateway cannot provision the channel.
    Returns None when another writer took the same group number first.
    """
    highest = db.execute(
        select(func.max(DeliveryGroup.group_number)).where(DeliveryGroup.month_key == current_key)
    ).scalar()
    group_number = (highest or 0) + 1
    group_name = f"{group_base_name()} {current_key} #{group_number}"
    channel_id = gateway.create_group(group_name)

    group = DeliveryGroup(
        group_name=group_name,
        external_channel_id=channel_id,
        group_number=group_number,
        member_count=0,
        max_members=max_members,
        is_active=True,
        month_key=current_key,
    )
    try:
        with db.begin_nested():
            db.add(group)
            db.flush()
    except IntegrityError:
        logger.warning(
            "Lost group creation race for month_key=%s group_number=%s; channel %s is unused",
            current_key,
            group_number,
            channel_id,
        )
        return None

    log_audit_event(
        db,
        entity_type="delivery_group",
        entity_id=group.id,
        event_type="group_created",
        actor="system",
        after={
            "group_name": group.group_name,
            "group_number": group.group_number,
            "external_channel_id": group.external_channel_id,
            "month_key": group.month_key,
            "max_members": group.max_members,
        },
    )
    return group


def _append_member(db: Session, group: DeliveryGroup, user_id: str, current_key: str) -> bool:
    try:
        with db.begin_nested():
            if not try_append(db, group.id, current_key):
                return False
            db.add(DeliveryGroupMember(group_id=group.id, user_id=user_id, month_key=current_key))
            db.flush()
    except IntegrityError:
        # the user was assigned concurrently; the savepoint undid our increment
        return False
    return True


def assign_subscriber(
    db: Session,
    user_id: str,
    *,
    current_key: str,
    gateway: MessagingGateway,
    max_members: Optional[int] = None,
) -> Assignment:
    existing = _existing_assignment(db, user_id, current_key)
    if existing:
        return existing

    capacity = max_members or default_max_members()
    tried: set[str] = set()
    created = False
    for attempt in range(MAX_ASSIGN_ATTEMPTS):
        group = _next_open_group(db, current_key, tried)
        if group is None:
            group = provision_group(db, gateway=gateway, current_key=current_key, max_members=capacity)
            if group is None:
                continue
            created = True
        tried.add(group.id)

        if _append_member(db, group, user_id, current_key):
            return Assignment(
                user_id=user_id,
                group_id=group.id,
                group_number=group.group_number,
                created_group=created,
            )

        existing = _existing_assignment(db, user_id, current_key)
        if existing:
            return existing
        logger.info(
            "Lost capacity race on group %s (attempt %s) for user_id=%s",
            group.group_number,
            attempt + 1,
            user_id,
        )

    raise Conflict(
        "no delivery group capacity available after retry",
        context={"user_id": user_id, "month_key": current_key},
    )


def sync_external_members(db: Session, *, current_key: str, gateway: MessagingGateway) -> Tuple[int, int]:
    """
    Push this month's assigned members into their external groups.

    Members not yet added are retried on every refresh. A failed add only marks
    that member; the assignment itself always stands.
    """
    rows = db.execute(
        select(DeliveryGroupMember, DeliveryGroup)
        .join(DeliveryGroup, DeliveryGroup.id == DeliveryGroupMember.group_id)
        .where(
            DeliveryGroupMember.month_key == current_key,
            DeliveryGroupMember.external_status != "added",
            DeliveryGroup.is_active.is_(True),
        )
        .order_by(DeliveryGroup.group_number.asc(), DeliveryGroupMember.created_at.asc())
    ).all()
    profiles = subscription_service.profiles_for_users(db, (member.user_id for member, _ in rows))

    added = 0
    failed = 0
    for member, group in rows:
        target = subscription_service.deliverable_contact(profiles.get(member.user_id))
        if not target:
            member.external_status = "no_contact"
            continue
        try:
            outcome = gateway.add_member(group.external_channel_id, target)
        except ExternalServiceError as exc:
            outcome = DeliveryOutcome(target=target, success=False, error=exc.detail)
        if outcome.success:
            member.external_status = "added"
            member.external_error = None
            added += 1
        else:
            member.external_status = "failed"
            member.external_error = (outcome.error or "member add failed")[:400]
            failed += 1
            logger.warning(
                "Could not add user_id=%s to group %s: %s",
                member.user_id,
                group.group_number,
                member.external_error,
            )
    db.commit()
    return added, failed


def refresh_groups(
    db: Session,
    *,
    gateway: MessagingGateway,
    clock: Clock,
    max_members: Optional[int] = None,
) -> RefreshSummary:
    """
    Assign every active subscriber without a group this month.

    Commits after each assignment: subscribers placed before a provisioning
    failure stay placed, and the failure is reported for the rest of the batch.
    """
    key = current_month_key(clock)
    retired = retire_past_groups(db, key)
    if retired:
        db.commit()

    eligible = eligible_subscribers(db, key)
    migrated = 0
    created = 0
    failed = 0
    error: Optional[str] = None
    touched: set[str] = set()

    for index, user_id in enumerate(eligible):
        try:
            assignment = assign_subscriber(
                db,
                user_id,
                current_key=key,
                gateway=gateway,
                max_members=max_members,
            )
        except ExternalServiceError as exc:
            db.rollback()
            failed += len(eligible) - index
            error = exc.detail
            logger.warning(
                "Group provisioning failed for month_key=%s; %s subscribers left unassigned: %s",
                key,
                len(eligible) - index,
                exc.detail,
            )
            break
        except Conflict as exc:
            db.rollback()
            failed += 1
            error = exc.detail
            logger.warning("Could not place user_id=%s for month_key=%s: %s", user_id, key, exc.detail)
            continue

        db.commit()
        if assignment.already_assigned:
            continue
        migrated += 1
        touched.add(assignment.group_id)
        if assignment.created_group:
            created += 1

    members_added, member_add_failed = sync_external_members(db, current_key=key, gateway=gateway)

    summary = RefreshSummary(
        month_key=key,
        migrated=migrated,
        groups_touched=len(touched),
        groups_created=created,
        groups_retired=retired,
        failed=failed,
        error=error,
        members_added=members_added,
        member_add_failed=member_add_failed,
    )
    if migrated or failed or members_added or member_add_failed:
        log_audit_event(
            db,
            entity_type="delivery_group",
            entity_id=None,
            event_type="groups_refreshed",
            actor="system",
            after=asdict(summary),
        )
        db.commit()
    logger.info(
        "Group refresh for %s: migrated=%s touched=%s created=%s failed=%s members_added=%s member_add_failed=%s",
        key,
        migrated,
        len(touched),
        created,
        failed,
        members_added,
        member_add_failed,
    )
    return summary
