"""
============================================================================
Conversion Engine - Lifecycle State Machine
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Every transition appends a history entry with correlation_id

CONVERSION LIFECYCLE STATE MACHINE:

    pending    -> converting  (execution picked up the record)
    pending    -> cancelled   (operator rejected the conversion)
    converting -> completed   (venue filled the order)
    converting -> failed      (venue, timeout or slippage failure)
    failed     -> pending     (bounded retry re-entry)

    Terminal States: completed, cancelled
    failed is terminal unless a retry is scheduled

ERROR CODES:
    - CNV-011: Invalid state transition attempted

============================================================================
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
import logging

from services.conversion_errors import ConversionErrorCode, InvalidTransitionError
from services.conversion_models import (
    ConversionRecord,
    ConversionStatus,
    StatusHistoryEntry,
    utc_now,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Transition Graph
# =============================================================================

VALID_TRANSITIONS: Dict[ConversionStatus, List[ConversionStatus]] = {
    ConversionStatus.PENDING: [ConversionStatus.CONVERTING, ConversionStatus.CANCELLED],
    ConversionStatus.CONVERTING: [ConversionStatus.COMPLETED, ConversionStatus.FAILED],
    ConversionStatus.FAILED: [ConversionStatus.PENDING],
    ConversionStatus.COMPLETED: [],
    ConversionStatus.CANCELLED: [],
}

TERMINAL_STATES = frozenset({ConversionStatus.COMPLETED, ConversionStatus.CANCELLED})

# Status-specific audit timestamp written on entry
_STATUS_TIMESTAMP_FIELD: Dict[ConversionStatus, str] = {
    ConversionStatus.CONVERTING: "submitted_at",
    ConversionStatus.COMPLETED: "completed_at",
    ConversionStatus.FAILED: "failed_at",
    ConversionStatus.CANCELLED: "cancelled_at",
}


def validate_transition(
    current: ConversionStatus,
    target: ConversionStatus,
    correlation_id: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    """
    Validate a lifecycle transition against the graph.

    Returns:
        (True, None) if allowed, (False, "CNV-011") otherwise
    """
    valid_targets = VALID_TRANSITIONS.get(current, [])
    if target not in valid_targets:
        valid_str = "/".join(s.value for s in valid_targets) or "NONE (terminal state)"
        logger.warning(
            f"[{ConversionErrorCode.INVALID_TRANSITION}] Invalid state transition: "
            f"{current.value} -> {target.value} | valid={valid_str} | "
            f"correlation_id={correlation_id}"
        )
        return (False, ConversionErrorCode.INVALID_TRANSITION)
    return (True, None)


def apply_transition(
    record: ConversionRecord,
    target: ConversionStatus,
    note: str = "",
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None
) -> StatusHistoryEntry:
    """
    Move a record to ``target`` in place and append a history entry.

    The caller persists the record and the returned entry together.

    Raises:
        InvalidTransitionError: If the graph forbids the transition (CNV-011)
    """
    is_valid, error_code = validate_transition(record.status, target, record.correlation_id)
    if not is_valid:
        raise InvalidTransitionError(
            f"Cannot move conversion from {record.status.value} to {target.value}",
            error_code=error_code,
            details={"conversion_id": record.id},
        )

    timestamp = now or utc_now()
    previous = record.status
    record.status = target
    record.updated_at = timestamp
    field_name = _STATUS_TIMESTAMP_FIELD.get(target)
    if field_name:
        setattr(record, field_name, timestamp)

    entry = StatusHistoryEntry(
        status=target,
        timestamp=timestamp,
        note=note,
        metadata=dict(metadata or {}),
    )
    record.status_history.append(entry)

    logger.info(
        f"[CONVERSION-STATE] {previous.value} -> {target.value} | "
        f"conversion_id={record.id} | note={note} | "
        f"correlation_id={record.correlation_id}"
    )
    return entry


def get_valid_transitions(status: ConversionStatus) -> List[ConversionStatus]:
    return list(VALID_TRANSITIONS.get(status, []))


def is_terminal_state(status: ConversionStatus) -> bool:
    return status in TERMINAL_STATES


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "validate_transition",
    "apply_transition",
    "get_valid_transitions",
    "is_terminal_state",
]
