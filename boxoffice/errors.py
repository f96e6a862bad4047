"""Domain errors for the order/payment core.

Idempotent replays are not errors and never raise; they come back as result
flags (``already_completed``, ``duplicate``...).
"""

from enum import Enum


class ErrorCode(Enum):
    VALIDATION = "VALIDATION"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFLICT = "CONFLICT"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    NOT_FOUND = "NOT_FOUND"


class DomainError(Exception):
    status_code = 400

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.VALIDATION, message)


class AuthorizationError(DomainError):
    status_code = 403

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.UNAUTHORIZED, message)


class ConflictError(DomainError):
    status_code = 409

    def __init__(self, message: str,
                 code: ErrorCode = ErrorCode.CONFLICT) -> None:
        super().__init__(code, message)


class InvalidTransitionError(ConflictError):
    def __init__(self, order_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Order {order_id} cannot move from {current} to {target}",
            code=ErrorCode.INVALID_TRANSITION,
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class InsufficientInventoryError(ConflictError):
    def __init__(self, tier_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Not enough tickets available in tier {tier_id}: "
            f"requested {requested}, {available} remaining",
            code=ErrorCode.INSUFFICIENT_INVENTORY,
        )
        self.tier_id = tier_id
        self.requested = requested
        self.available = available


class NotFoundError(DomainError):
    status_code = 404

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(ErrorCode.NOT_FOUND, f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident
