"""
Reconciliation Errors
=====================
Fatal errors stop the router for the current delivery. Non-fatal errors are
caught at the stage boundary that raised them and logged.
"""

from enum import Enum
from typing import Optional


class VerificationFailure(str, Enum):
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    NOT_APPROVED = "NOT_APPROVED"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"


class ReconciliationError(Exception):
    """Base class for everything raised by the reconciliation pipeline."""


class VerificationError(ReconciliationError):
    """The inbound confirmation could not be authenticated."""

    def __init__(self, reason: VerificationFailure, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class RetryableStorageError(ReconciliationError):
    """Storage failed in a way the provider's redelivery can recover from."""


class DuplicateKeyError(ReconciliationError):
    """A unique constraint rejected an insert."""

    def __init__(self, constraint: str, detail: str = ""):
        self.constraint = constraint
        self.detail = detail
        super().__init__(f"duplicate key on {constraint}" + (f": {detail}" if detail else ""))


class DegradedPipelineError(ReconciliationError):
    """A post-payment stage failed; the payment itself stands."""

    def __init__(self, stage: str, detail: str = ""):
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage} degraded: {detail}")


class ProviderAPIError(ReconciliationError):
    """Transport failure or non-2xx answer from a provider API."""

    def __init__(self, provider: str, status_code: Optional[int] = None, detail: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{provider} API error ({status_code}): {detail}")
