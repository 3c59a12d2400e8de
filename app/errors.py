"""
============================================================================
Stake Reward Distributor - Error Taxonomy
============================================================================

Reliability Level: L6 Critical
Traceability: Every exception carries an error code used in log lines

PROPAGATION POLICY:
    - Failures that corrupt the whole run (DataUnavailable,
      InsufficientBalance) abort BEFORE any transfer is sent.
    - Failures scoped to one recipient (SubmissionRejected,
      SubmissionUnconfirmed, VerificationMismatch and unexpected transport
      errors) are recorded on the SettlementRecord and the run continues.
    - CalibrationUnreachable is a warning; the engine clamps and continues.

ERROR CODES:
    - CFG-001: Configuration missing or invalid
    - DATA-001: Required market/stake value unavailable
    - ALLOC-001: Calibration target outside achievable range
    - SETL-001: Malformed smallest-unit hex encoding
    - SETL-002: Ledger rejected a submission
    - SETL-003: Sender balance does not cover the payout total
    - SETL-004: Run already executed for this date
    - SETL-005: Run left in progress by an interrupted execution
    - SETL-006: Invalid run state transition
    - SETL-007: Submission outcome unknown (transport failed mid-send)
    - VRFY-001: Ledger success without the expected transfer event
============================================================================
"""

from typing import Optional


class DistributionErrorCode:
    """Error codes for audit logging."""
    CONFIG_INVALID = "CFG-001"
    DATA_UNAVAILABLE = "DATA-001"
    CALIBRATION_UNREACHABLE = "ALLOC-001"
    ENCODING_INVALID = "SETL-001"
    SUBMISSION_REJECTED = "SETL-002"
    INSUFFICIENT_BALANCE = "SETL-003"
    RUN_ALREADY_EXECUTED = "SETL-004"
    RUN_INTERRUPTED = "SETL-005"
    INVALID_TRANSITION = "SETL-006"
    SUBMISSION_UNCONFIRMED = "SETL-007"
    VERIFICATION_MISMATCH = "VRFY-001"


class DistributionError(Exception):
    """
    Base class for all distribution pipeline errors.

    The rendered message is prefixed with the error code so that an
    exception surfacing in a log line is still greppable by code.
    """

    error_code = "DIST-000"

    def __init__(self, message: str, error_code: Optional[str] = None):
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        super().__init__(f"[{self.error_code}] {message}")


class ConfigurationError(DistributionError):
    """Raised at startup when configuration is missing or invalid."""
    error_code = DistributionErrorCode.CONFIG_INVALID


class DataUnavailable(DistributionError):
    """
    A required market or stake value is missing, zero or non-positive,
    or every source (primary, backup, cache, static) failed.

    Never replaced by a fabricated zero.
    """
    error_code = DistributionErrorCode.DATA_UNAVAILABLE

    def __init__(self, message: str, field_name: Optional[str] = None):
        self.field_name = field_name
        super().__init__(message)


class CalibrationUnreachable(DistributionError):
    """Bonus pool target lies outside the curve's achievable range."""
    error_code = DistributionErrorCode.CALIBRATION_UNREACHABLE


class EncodingInvalid(DistributionError):
    """Smallest-unit amount hex is not even-length lowercase hex."""
    error_code = DistributionErrorCode.ENCODING_INVALID


class SubmissionRejected(DistributionError):
    """The ledger refused a single transfer (bad nonce, balance, gas)."""
    error_code = DistributionErrorCode.SUBMISSION_REJECTED


class InsufficientBalance(DistributionError):
    """Sender cannot cover the full payout; nothing is submitted."""
    error_code = DistributionErrorCode.INSUFFICIENT_BALANCE

    def __init__(self, message: str, required: int = 0, available: int = 0):
        self.required = required
        self.available = available
        super().__init__(message)


class RunAlreadyExecuted(DistributionError):
    """The idempotency marker for the run date is already present."""
    error_code = DistributionErrorCode.RUN_ALREADY_EXECUTED


class RunInterrupted(DistributionError):
    """A previous execution for the date stopped mid-run; use resend."""
    error_code = DistributionErrorCode.RUN_INTERRUPTED


class InvalidRunTransition(DistributionError):
    """Run state machine violation."""
    error_code = DistributionErrorCode.INVALID_TRANSITION


class VerificationMismatch(DistributionError):
    """
    Ledger reported success but the event log carries no transfer of
    the expected asset (or carries a different amount).

    Stored on the record as an audit finding rather than raised.
    """
    error_code = DistributionErrorCode.VERIFICATION_MISMATCH


class SubmissionUnconfirmed(DistributionError):
    """
    The send request failed in transport after it may have reached the
    ledger. The transfer may or may not have landed; such lines are not
    resent unless the operator asks for them explicitly.
    """
    error_code = DistributionErrorCode.SUBMISSION_UNCONFIRMED
