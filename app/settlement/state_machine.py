"""
============================================================================
Settlement Run State Machine
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: All transitions are logged with correlation_id

SETTLEMENT RUN LIFECYCLE:
    NOT_STARTED → IN_PROGRESS        (execution begins)
    IN_PROGRESS → COMPLETED          (every record submitted, none failed)
    IN_PROGRESS → PARTIALLY_FAILED   (at least one record failed)
    PARTIALLY_FAILED → IN_PROGRESS   (operator resend pass)
    PARTIALLY_FAILED → COMPLETED     (verification after resend)
    COMPLETED → IN_PROGRESS          (forced re-execution, new attempt)
    COMPLETED → PARTIALLY_FAILED     (verification finds a failed transfer)

    A run that stays IN_PROGRESS was interrupted; the completion marker is
    only written on the transition out of IN_PROGRESS.

ERROR CODES:
    - SETL-006: Invalid state transition attempted
============================================================================
"""

from typing import Optional, Dict, List, Tuple
import logging

from app.errors import DistributionErrorCode, InvalidRunTransition
from app.settlement.models import RunState

# Configure module logger
logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[RunState, List[RunState]] = {
    RunState.NOT_STARTED: [RunState.IN_PROGRESS],
    RunState.IN_PROGRESS: [RunState.COMPLETED, RunState.PARTIALLY_FAILED],
    RunState.PARTIALLY_FAILED: [RunState.IN_PROGRESS, RunState.COMPLETED],
    RunState.COMPLETED: [RunState.IN_PROGRESS, RunState.PARTIALLY_FAILED],
}

# States that carry the idempotency marker
FINISHED_STATES: List[RunState] = [RunState.COMPLETED, RunState.PARTIALLY_FAILED]


def validate_transition(
    current_state: RunState,
    target_state: RunState,
    correlation_id: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    """
    Check a run state transition against VALID_TRANSITIONS.

    Returns:
        (True, None) when allowed, else (False, "SETL-006")
    """
    if target_state in VALID_TRANSITIONS.get(current_state, []):
        return True, None

    logger.error(
        f"[{DistributionErrorCode.INVALID_TRANSITION}] Invalid run transition | "
        f"from={current_state.value} | to={target_state.value} | "
        f"correlation_id={correlation_id}"
    )
    return False, DistributionErrorCode.INVALID_TRANSITION


def transition(
    current_state: RunState,
    target_state: RunState,
    correlation_id: Optional[str] = None
) -> RunState:
    """
    Apply a transition or raise.

    Raises:
        InvalidRunTransition: If the transition is not allowed (SETL-006)
    """
    allowed, _ = validate_transition(current_state, target_state, correlation_id)
    if not allowed:
        raise InvalidRunTransition(
            f"Run cannot move from {current_state.value} to {target_state.value}"
        )
    logger.info(
        f"[SETL-STATE] Run transition | from={current_state.value} | "
        f"to={target_state.value} | correlation_id={correlation_id}"
    )
    return target_state
