"""Internal payment order statuses and the rules the reconciler applies."""

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ORDER_STATUSES: frozenset[str] = frozenset({PENDING, COMPLETED, FAILED, CANCELLED})
TERMINAL_STATUSES: frozenset[str] = frozenset({COMPLETED, FAILED, CANCELLED})


def validate_status(status: str) -> None:
    """Raise when a status is outside the internal vocabulary."""

    if status not in ORDER_STATUSES:
        raise ValueError(f"Unknown order status: {status}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def triggers_fulfillment(status: str) -> bool:
    """Only a move into `completed` can start fulfillment.

    Whether it actually does is decided by the conditional write on the
    order row, never by this check alone.
    """

    return status == COMPLETED
