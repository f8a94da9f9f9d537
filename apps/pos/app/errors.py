"""
Error taxonomy for the settlement engine.

ValidationError   - bad line shape, handled where detected, never retried
NotFound          - referenced order/product missing, fatal for the operation
Transient         - ledger unreachable or too slow, retried via the offline queue
Corruption        - invariant violated mid-transaction, fatal and alerted
"""

from __future__ import annotations


class PosError(Exception):
    """Base class. ``code`` is the stable machine-readable detail."""

    code = "pos_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.context = context


class ValidationError(PosError):
    code = "validation_error"


class LineValidationError(ValidationError):
    code = "invalid_line"


class NoValidLineItems(ValidationError):
    code = "no_valid_line_items"


class NotFound(PosError):
    code = "not_found"


class OrderNotFound(NotFound):
    code = "order_not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"


class Transient(PosError):
    code = "transient"


class LedgerUnavailable(Transient):
    code = "ledger_unavailable"


class Corruption(PosError):
    code = "corruption"


class SettlementCorruption(Corruption):
    code = "settlement_corruption"


class NonUniqueIdentifier(PosError):
    code = "non_unique_identifier"


class QueueWriteFailed(PosError):
    code = "queue_write_failed"


# Only these are eligible for automatic replay.
RETRYABLE = (Transient,)

_BY_CODE = {
    cls.code: cls
    for cls in (
        LineValidationError,
        NoValidLineItems,
        OrderNotFound,
        ProductNotFound,
        LedgerUnavailable,
        SettlementCorruption,
        NonUniqueIdentifier,
        QueueWriteFailed,
    )
}


def error_for_code(code: str, message: str = "") -> PosError:
    """Rebuild a domain error from the ``detail`` code of an HTTP response."""
    cls = _BY_CODE.get(code, PosError)
    return cls(message or code)


def http_status_for(exc: PosError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, Transient):
        return 503
    if isinstance(exc, QueueWriteFailed):
        return 507
    if isinstance(exc, (Corruption, NonUniqueIdentifier)):
        return 409
    return 500
