"""
Abstract ledger interface used by webhook handlers.

Handlers only talk to this interface, so the synchronous in-process
LedgerService can later be replaced by a client that enqueues the same
operations without touching handler code.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ledger_service.models import LedgerEntry, Transaction


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a handler-level status change on a transaction."""
    transaction_id: str
    previous_status: str
    status: str
    entry: Optional[LedgerEntry] = None

    @property
    def changed(self) -> bool:
        return self.previous_status != self.status


class LedgerGateway(ABC):

    @abstractmethod
    def find_transaction_by_reference(self, provider: str, reference: str) -> Optional[Transaction]:
        """
        Resolve a provider reference to an internal transaction.

        Returns:
            The matching transaction, or None when nothing matches
        """

    @abstractmethod
    def settle_transaction(self, transaction_id: str) -> TransitionResult:
        """
        Mark a transaction completed and post its settlement entry.

        Applying this to an already-completed transaction is a no-op.

        Raises:
            InvalidStateTransitionError: If the transaction already failed or was reversed
            InvariantViolationError: If the account balance would go negative
        """

    @abstractmethod
    def fail_transaction(self, transaction_id: str, reason: Optional[str] = None) -> TransitionResult:
        """
        Mark a transaction failed, compensating any amount already posted.
        """

    @abstractmethod
    def reverse_transaction(self, transaction_id: str, reason: Optional[str] = None) -> TransitionResult:
        """
        Mark a transaction reversed, compensating any amount already posted.
        """

    @abstractmethod
    def touch_recipient(self, provider: str, recipient_code: str) -> bool:
        """Record that a transfer recipient was just used. True if one was found."""
