from __future__ import annotations

import re
from enum import StrEnum


class DlmmPilotError(Exception):
    pass


class InvalidStrategyError(DlmmPilotError, ValueError):
    """Raised when a strategy or deposit fails its preconditions before any chain call."""


class SubmissionFailure(StrEnum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    OTHER = "other"


class SubmissionError(DlmmPilotError):
    def __init__(
        self,
        message: str,
        *,
        kind: SubmissionFailure = SubmissionFailure.OTHER,
        signatures: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        # Signatures of steps that landed before the failure
        self.signatures = list(signatures or [])


class InsufficientFundsError(SubmissionError):
    def __init__(self, message: str, *, signatures: list[str] | None = None) -> None:
        super().__init__(
            message, kind=SubmissionFailure.INSUFFICIENT_FUNDS, signatures=signatures
        )


class NoLiquidityError(DlmmPilotError):
    """The position holds no liquidity, so only the close instruction applies."""


class AdvisorError(DlmmPilotError):
    pass


# InstructionError Custom(1) is the token program's insufficient-funds code
_INSUFFICIENT_FUNDS_RE = re.compile(
    r'"custom"\s*:\s*1(?!\d)|insufficient\s*lamports|insufficient\s*funds',
    re.IGNORECASE,
)
_NO_LIQUIDITY_MARKERS = ("no liquidity", "empty")


def is_insufficient_funds_message(message: str) -> bool:
    return _INSUFFICIENT_FUNDS_RE.search(message) is not None


def is_no_liquidity_message(message: str) -> bool:
    text = message.lower()
    return any(m in text for m in _NO_LIQUIDITY_MARKERS)


def classify_submission_error(
    exc: Exception, *, signatures: list[str] | None = None
) -> SubmissionError:
    """Wrap a raw submission exception into a typed ``SubmissionError``.

    Already-typed errors pass through unchanged.
    """
    if isinstance(exc, SubmissionError):
        return exc
    message = str(exc) or type(exc).__name__
    if is_insufficient_funds_message(message):
        return InsufficientFundsError(message, signatures=signatures)
    return SubmissionError(message, signatures=signatures)
