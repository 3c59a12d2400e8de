"""
============================================================================
Ledger Interface - Abstract Settlement Ledger
============================================================================

Reliability Level: L6 Critical
Traceability: All operations include correlation_id

LEDGER INTERFACE:
    Any ledger offering an at-most-once submission primitive with an
    eventual inclusion/rejection outcome and an event-log inspection
    primitive can settle a distribution. The batcher and verifier only
    talk to this interface; the MultiversX gateway client and the
    simulated ledger are the two implementations.

Key Constraints:
- Sequence numbers are supplied by the caller, never read inside submit()
- submit() raises SubmissionRejected for a ledger-level refusal
- inspect() never raises for an unknown/pending transaction
============================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any


class InspectionStatus(Enum):
    """Normalized transaction outcome as reported by the ledger."""
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_ledger(cls, raw: Optional[str]) -> "InspectionStatus":
        value = (raw or "").strip().lower()
        if value in ("success", "executed"):
            return cls.SUCCESS
        if value in ("pending", "received", "partially-executed"):
            return cls.PENDING
        if value in ("fail", "failed", "invalid"):
            return cls.FAILED
        return cls.UNKNOWN


@dataclass
class LedgerEvent:
    """One entry of a transaction's event log, reduced to transfer fields."""
    identifier: str
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    receiver: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "asset_id": self.asset_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "receiver": self.receiver,
        }


@dataclass
class LedgerInspection:
    """Result of inspect(reference_id): {status, events}."""
    reference_id: str
    status: InspectionStatus
    events: List[LedgerEvent] = field(default_factory=list)
    raw_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "status": self.status.value,
            "raw_status": self.raw_status,
            "events": [e.to_dict() for e in self.events],
        }


class LedgerInterface(ABC):
    """
    Abstract settlement ledger.

    Reliability Level: L6 Critical
    """

    @abstractmethod
    def get_sequence(self, address: str) -> int:
        """Current sequence number (nonce) of an account."""
        pass

    @abstractmethod
    def get_asset_balance(self, address: str, asset_id: str) -> int:
        """Token balance of an account in smallest units."""
        pass

    @abstractmethod
    def submit(
        self,
        sender: str,
        recipient: str,
        asset_id: str,
        amount_smallest_unit: int,
        sequence: int
    ) -> str:
        """
        Sign and submit one transfer; returns the ledger reference id.

        Raises:
            SubmissionRejected: Ledger refused the transfer
        """
        pass

    @abstractmethod
    def inspect(self, reference_id: str) -> LedgerInspection:
        """Status and event log of a submitted transfer."""
        pass

    def close(self) -> None:
        """Release network resources (no-op by default)."""
        return None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
