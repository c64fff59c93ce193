from __future__ import annotations

from typing import Any


class LifecycleError(RuntimeError):
    """Domain error raised by runtime services.

    `code` is one of: invalid_argument, not_found, conflict, invalid_transition,
    unauthenticated. The HTTP layer maps codes to status codes.
    """

    code = "invalid_argument"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidArgumentError(LifecycleError):
    code = "invalid_argument"


class NotFoundError(LifecycleError):
    code = "not_found"


class ConflictError(LifecycleError):
    code = "conflict"


class InvalidTransitionError(LifecycleError):
    code = "invalid_transition"

    def __init__(self, *, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current!r} to {target!r}.",
            details={"entity": entity, "id": entity_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class UnauthenticatedError(LifecycleError):
    code = "unauthenticated"
