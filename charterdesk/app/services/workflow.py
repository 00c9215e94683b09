from __future__ import annotations

from enum import Enum
from typing import Union

from charterdesk.app.errors import InvalidTransitionError, ValidationError
from charterdesk.app.models import ContactStatus, EntityKind, QuoteStatus

INITIAL_STATUS = "pending"

QUOTE_TRANSITIONS = {
    QuoteStatus.pending: {QuoteStatus.processing, QuoteStatus.closed},
    QuoteStatus.processing: {QuoteStatus.quoted, QuoteStatus.closed},
    QuoteStatus.quoted: {QuoteStatus.converted, QuoteStatus.closed},
    QuoteStatus.converted: set(),
    QuoteStatus.closed: set(),
}

CONTACT_TRANSITIONS = {
    ContactStatus.pending: {ContactStatus.responded},
    ContactStatus.responded: {ContactStatus.closed},
    ContactStatus.closed: set(),
}

STATUS_ENUMS: dict[EntityKind, type[Enum]] = {
    EntityKind.quote: QuoteStatus,
    EntityKind.contact: ContactStatus,
}

ALLOWED_TRANSITIONS: dict[EntityKind, dict] = {
    EntityKind.quote: QUOTE_TRANSITIONS,
    EntityKind.contact: CONTACT_TRANSITIONS,
}

StatusValue = Union[QuoteStatus, ContactStatus, str]


def _value(status: StatusValue) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def statuses_for(kind: EntityKind) -> list[str]:
    return [member.value for member in STATUS_ENUMS[kind]]


def parse_status(kind: EntityKind, raw: StatusValue) -> str:
    value = _value(raw).strip().lower()
    if value not in statuses_for(kind):
        raise ValidationError(
            f"invalid {kind.value} status: {_value(raw)!r}. "
            f"valid statuses: {', '.join(statuses_for(kind))}"
        )
    return value


def is_terminal(kind: EntityKind, status: StatusValue) -> bool:
    return not available_actions(kind, status)


def available_actions(kind: EntityKind, status: StatusValue) -> list[str]:
    table = ALLOWED_TRANSITIONS[kind]
    for source, targets in table.items():
        if source.value == _value(status):
            return sorted(target.value for target in targets)
    return []


def is_valid_transition(kind: EntityKind, from_status: StatusValue, to_status: StatusValue) -> bool:
    """Pure check against the transition graph of ``kind``.

    Staying in the same status counts as valid while the status still has
    outgoing transitions, so a note can be attached without moving the
    entity. Terminal statuses accept nothing, not even themselves.
    """
    source = _value(from_status)
    target = _value(to_status)
    allowed = available_actions(kind, source)
    if not allowed:
        return False
    return target == source or target in allowed


def validate_transition(kind: EntityKind, from_status: StatusValue, to_status: StatusValue) -> None:
    if not is_valid_transition(kind, from_status, to_status):
        raise InvalidTransitionError(
            kind.value,
            _value(from_status),
            _value(to_status),
            allowed=available_actions(kind, from_status),
        )
