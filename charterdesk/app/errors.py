from __future__ import annotations

from typing import Iterable, Optional


class CharterDeskError(Exception):
    reason = "error"

    def to_detail(self) -> dict:
        return {"reason": self.reason, "message": str(self)}


class ValidationError(CharterDeskError):
    reason = "validation_error"


class NotFoundError(CharterDeskError):
    reason = "not_found"

    def __init__(self, entity_kind: str, entity_id: str) -> None:
        super().__init__(f"{entity_kind} not found: {entity_id}")
        self.entity_kind = entity_kind
        self.entity_id = entity_id


class InvalidTransitionError(CharterDeskError):
    reason = "invalid_transition"

    def __init__(
        self,
        entity_kind: str,
        from_status: str,
        to_status: str,
        allowed: Optional[Iterable[str]] = None,
    ) -> None:
        self.entity_kind = entity_kind
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = sorted(allowed or [])
        valid = ", ".join(self.allowed) if self.allowed else "none"
        super().__init__(
            f"invalid {entity_kind} status transition {from_status} -> {to_status}. "
            f"valid transitions: {valid}"
        )

    def to_detail(self) -> dict:
        return {
            "reason": self.reason,
            "message": str(self),
            "from": self.from_status,
            "to": self.to_status,
            "allowed": self.allowed,
        }


class StatusConflictError(CharterDeskError):
    """Conditional append lost: the entity moved on since the caller read it."""

    reason = "status_conflict"

    def __init__(self, entity_id: str, expected_status: str, current_status: str) -> None:
        super().__init__(
            f"status of {entity_id} is {current_status}, expected {expected_status}"
        )
        self.entity_id = entity_id
        self.expected_status = expected_status
        self.current_status = current_status

    def to_detail(self) -> dict:
        return {
            "reason": self.reason,
            "message": str(self),
            "expected": self.expected_status,
            "current": self.current_status,
        }


class PersistenceError(CharterDeskError):
    reason = "persistence_error"
