from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.domain.contracts import SignalFieldsContract
from backend.app.domain.errors import Conflict, LedgerIntegrityError, NotFound, ValidationError
from backend.app.domain.signal_fields import (
    SIGNAL_FIELDS,
    SignalChanges,
    apply_changes,
    diff_snapshots,
    snapshot_of,
)
from backend.app.models import (
    REVISION_INITIAL,
    REVISION_UPDATE,
    SIGNAL_STATUSES,
    SIGNAL_TERMINAL_STATUSES,
    Signal,
    SignalRevision,
    utcnow,
)


logger = logging.getLogger(__name__)

_FIELD_NAMES = frozenset(field.value for field in SIGNAL_FIELDS)


@dataclass(frozen=True)
class SignalUpdateResult:
    signal: Signal
    changes: SignalChanges
    revision: Optional[SignalRevision]


def _validated_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(fields) - _FIELD_NAMES)
    if unknown:
        raise ValidationError("unknown signal fields", context={"fields": unknown})
    try:
        contract = SignalFieldsContract(**fields)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError("invalid signal fields", context={"errors": errors}) from exc
    return contract.model_dump()


def _require_signal(db: Session, signal_id: str, *, for_update: bool = False) -> Signal:
    stmt = select(Signal).where(Signal.id == signal_id)
    if for_update:
        stmt = stmt.with_for_update()
    signal = db.execute(stmt).scalars().first()
    if not signal:
        raise NotFound("signal not found", context={"signal_id": signal_id})
    return signal


def get_signal(db: Session, signal_id: str) -> Signal:
    return _require_signal(db, signal_id)


def list_signals(db: Session, *, status: Optional[str] = None, limit: int = 100) -> List[Signal]:
    stmt = select(Signal)
    if status:
        if status not in SIGNAL_STATUSES:
            raise ValidationError("invalid signal status", context={"status": status})
        stmt = stmt.where(Signal.status == status)
    stmt = stmt.order_by(Signal.created_at.desc(), Signal.id.desc()).limit(limit)
    return db.execute(stmt).scalars().all()


def create_signal(
    db: Session,
    *,
    fields: Mapping[str, Any],
    actor: Optional[str] = None,
) -> tuple[Signal, SignalRevision]:
    values = _validated_fields({**fields, "status": "active"})

    signal = Signal(created_by=actor, **values)
    db.add(signal)
    db.flush()

    revision = SignalRevision(
        signal_id=signal.id,
        sequence=0,
        revision_type=REVISION_INITIAL,
        snapshot=snapshot_of(values),
        changes=None,
        actor=actor,
    )
    db.add(revision)
    db.flush()
    return signal, revision


def _has_initial_revision(db: Session, signal_id: str) -> bool:
    found = db.execute(
        select(SignalRevision.id).where(
            SignalRevision.signal_id == signal_id,
            SignalRevision.revision_type == REVISION_INITIAL,
        )
    ).first()
    return found is not None


def _next_sequence(db: Session, signal_id: str) -> int:
    current = db.execute(
        select(func.max(SignalRevision.sequence)).where(SignalRevision.signal_id == signal_id)
    ).scalar()
    return 1 if current is None else max(current + 1, 1)


def update_signal(
    db: Session,
    signal_id: str,
    *,
    fields: Mapping[str, Any],
    actor: Optional[str] = None,
) -> SignalUpdateResult:
    signal = _require_signal(db, signal_id, for_update=True)
    before = snapshot_of(signal)
    after = _validated_fields({**before, **fields})

    changes = diff_snapshots(before, after)
    if not changes:
        return SignalUpdateResult(signal=signal, changes=changes, revision=None)
    if signal.status in SIGNAL_TERMINAL_STATUSES:
        raise Conflict(
            f"signal is {signal.status} and can no longer be edited",
            context={"signal_id": signal.id, "status": signal.status},
        )

    if not _has_initial_revision(db, signal.id):
        logger.warning("Ledger gap: synthesizing initial revision for signal_id=%s", signal.id)
        db.add(
            SignalRevision(
                signal_id=signal.id,
                sequence=0,
                revision_type=REVISION_INITIAL,
                snapshot=before,
                changes=None,
                actor=actor,
            )
        )
        db.flush()

    revision = SignalRevision(
        signal_id=signal.id,
        sequence=_next_sequence(db, signal.id),
        revision_type=REVISION_UPDATE,
        snapshot=None,
        changes=changes.to_dict(),
        actor=actor,
    )
    db.add(revision)

    for field in changes:
        setattr(signal, field.value, after[field.value])
    signal.updated_at = utcnow()
    db.flush()
    return SignalUpdateResult(signal=signal, changes=changes, revision=revision)


def get_signal_history(db: Session, signal_id: str) -> List[SignalRevision]:
    _require_signal(db, signal_id)
    return (
        db.execute(
            select(SignalRevision)
            .where(SignalRevision.signal_id == signal_id)
            .order_by(SignalRevision.sequence.asc())
        )
        .scalars()
        .all()
    )


def latest_revision(db: Session, signal_id: str) -> Optional[SignalRevision]:
    return (
        db.execute(
            select(SignalRevision)
            .where(SignalRevision.signal_id == signal_id)
            .order_by(SignalRevision.sequence.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def replay_history(revisions: Sequence[SignalRevision]) -> Dict[str, Any]:
    """
    Rebuild a signal's field map from its ledger.

    Expects revisions in ledger order: one initial snapshot followed by updates.
    """
    if not revisions or revisions[0].revision_type != REVISION_INITIAL:
        raise LedgerIntegrityError("Invariant violation: ledger does not start with an initial revision.")
    state = snapshot_of(revisions[0].snapshot or {})
    for revision in revisions[1:]:
        if revision.revision_type != REVISION_UPDATE:
            raise LedgerIntegrityError(
                f"Invariant violation: unexpected {revision.revision_type} revision at sequence {revision.sequence}."
            )
        state = apply_changes(state, SignalChanges.from_dict(revision.changes or {}))
    return state


def verify_ledger(db: Session, signal_id: str) -> dict:
    """
    Side-effect-free ledger check.

    Invariants:
    - Exactly one initial revision, first in ledger order.
    - Replaying the initial snapshot plus ordered diffs reproduces current state.
    """
    signal = _require_signal(db, signal_id)
    revisions = get_signal_history(db, signal_id)
    initial_count = sum(1 for revision in revisions if revision.revision_type == REVISION_INITIAL)
    if initial_count != 1:
        raise LedgerIntegrityError(
            f"Invariant violation: expected one initial revision, found {initial_count}."
        )
    replayed = replay_history(revisions)
    current = snapshot_of(signal)
    if replayed != current:
        mismatched = sorted(key for key in current if replayed.get(key) != current.get(key))
        raise LedgerIntegrityError(
            f"Invariant violation: replay does not reproduce current state ({', '.join(mismatched)})."
        )
    return {"signal_id": signal.id, "revisions": len(revisions), "updates": len(revisions) - 1}
