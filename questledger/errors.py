"""
questledger.errors — Reward Error Taxonomy
===========================================

Duplicate submissions are deliberately absent: a repeated activity is a
normal ``DUPLICATE`` outcome, not an error.
"""

from __future__ import annotations

__all__ = [
    "RewardError",
    "StorageUnavailable",
    "TransferAmbiguous",
    "TransferError",
    "TransferRejected",
    "ValidationError",
]


class RewardError(Exception):
    """Base class for every error raised by the reward core."""


class ValidationError(RewardError):
    """The submitted ActivityResult is malformed.

    Raised before reservation, so no ledger entry exists for it.
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class StorageUnavailable(RewardError):
    """The ledger or profile store could not be reached (or timed out)."""


class TransferError(RewardError):
    """Base class for token-transfer failures.

    ``attempts`` is set by the coordinator to the number of calls made
    before giving up.
    """

    attempts: int = 1


class TransferRejected(TransferError):
    """The transfer was refused outright (e.g. insufficient treasury funds).

    Terminal — never retried.
    """


class TransferAmbiguous(TransferError):
    """The transfer outcome is unknown (network error, 5xx, timeout).

    Retryable — the ledger entry stays ``pending``.
    """
