from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple


class SignalField(str, Enum):
    TRADING_PAIR = "trading_pair"
    SIGNAL_TYPE = "signal_type"
    ENTRY_PRICE = "entry_price"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT_1 = "take_profit_1"
    TAKE_PROFIT_2 = "take_profit_2"
    TAKE_PROFIT_3 = "take_profit_3"
    TITLE = "title"
    ANALYSIS = "analysis"
    CONFIDENCE_LEVEL = "confidence_level"
    STATUS = "status"


# Order matters: snapshots and diffs are emitted in this order.
SIGNAL_FIELDS: Tuple[SignalField, ...] = tuple(SignalField)

FIELD_LABELS: Dict[SignalField, str] = {
    SignalField.TRADING_PAIR: "Pair",
    SignalField.SIGNAL_TYPE: "Type",
    SignalField.ENTRY_PRICE: "Entry",
    SignalField.STOP_LOSS: "Stop Loss",
    SignalField.TAKE_PROFIT_1: "TP1",
    SignalField.TAKE_PROFIT_2: "TP2",
    SignalField.TAKE_PROFIT_3: "TP3",
    SignalField.TITLE: "Title",
    SignalField.ANALYSIS: "Analysis",
    SignalField.CONFIDENCE_LEVEL: "Confidence",
    SignalField.STATUS: "Status",
}


@dataclass(frozen=True)
class FieldChange:
    old: Any
    new: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"old": self.old, "new": self.new}


class SignalChanges(Mapping[SignalField, FieldChange]):
    """Immutable field -> (old, new) map over the fixed signal schema."""

    def __init__(self, changes: Optional[Mapping[SignalField, FieldChange]] = None):
        ordered = changes or {}
        self._changes: Dict[SignalField, FieldChange] = {
            field: ordered[field] for field in SIGNAL_FIELDS if field in ordered
        }

    def __getitem__(self, key: SignalField) -> FieldChange:
        return self._changes[SignalField(key)]

    def __iter__(self) -> Iterator[SignalField]:
        return iter(self._changes)

    def __len__(self) -> int:
        return len(self._changes)

    def __repr__(self) -> str:
        return f"SignalChanges({self.to_dict()!r})"

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {field.value: change.to_dict() for field, change in self._changes.items()}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Mapping[str, Any]]) -> "SignalChanges":
        parsed: Dict[SignalField, FieldChange] = {}
        for key, value in raw.items():
            parsed[SignalField(key)] = FieldChange(old=value.get("old"), new=value.get("new"))
        return cls(parsed)


def snapshot_of(source: Any) -> Dict[str, Any]:
    """Full field map of a signal-like object (ORM row or mapping)."""
    if isinstance(source, Mapping):
        return {field.value: source.get(field.value) for field in SIGNAL_FIELDS}
    return {field.value: getattr(source, field.value) for field in SIGNAL_FIELDS}


def diff_snapshots(before: Mapping[str, Any], after: Mapping[str, Any]) -> SignalChanges:
    changes: Dict[SignalField, FieldChange] = {}
    for field in SIGNAL_FIELDS:
        old = before.get(field.value)
        new = after.get(field.value)
        if old != new:
            changes[field] = FieldChange(old=old, new=new)
    return SignalChanges(changes)


def apply_changes(state: Mapping[str, Any], changes: SignalChanges) -> Dict[str, Any]:
    applied = dict(state)
    for field, change in changes.items():
        applied[field.value] = change.new
    return applied
