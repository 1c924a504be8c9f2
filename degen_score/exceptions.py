"""
Degen Score Exceptions - Error taxonomy for scoring and verification.

Provider failures are isolated per chain and folded into diagnostics by
the orchestrator. Verification failures abort only the single attempt
they belong to. Configuration errors are raised at load time, never
while serving a request.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .models import ChainId


class DegenScoreError(Exception):
    """Base exception for all degen score errors."""

    def __init__(
        self,
        message: str,
        chain: Optional["ChainId"] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.chain = chain
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "chain": self.chain.value if self.chain else None,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class InvalidAddressError(DegenScoreError):
    """Address is not valid for the chain it was paired with."""

    def __init__(
        self,
        address: str,
        chain: Optional["ChainId"] = None,
        reason: str = "invalid format",
    ) -> None:
        label = chain.value if chain else "unknown chain"
        super().__init__(
            f"Invalid {label} address {address!r}: {reason}",
            chain,
            {"address": address, "reason": reason},
        )
        self.address = address
        self.reason = reason


class ConfigurationError(DegenScoreError):
    """Invalid configuration (weights, caps, endpoints)."""
    pass


class NoUsableDataError(DegenScoreError):
    """No chain returned any data for a scoring request."""
    pass


# ─────────────────────────────────────────────────────────────
# Provider errors
# ─────────────────────────────────────────────────────────────

class ProviderError(DegenScoreError):
    """Base for failures returned by a chain data provider."""

    retryable = True

    def __init__(
        self,
        message: str,
        chain: Optional["ChainId"] = None,
        rpc_url: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, details)
        self.rpc_url = rpc_url


class RpcUnavailableError(ProviderError):
    """RPC endpoint unreachable or returned a server-side error."""

    def __init__(
        self,
        message: str,
        chain: Optional["ChainId"] = None,
        rpc_url: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, rpc_url, details)
        self.status_code = status_code


class RateLimitedError(ProviderError):
    """RPC endpoint rejected the call because of rate limiting."""

    def __init__(
        self,
        message: str,
        chain: Optional["ChainId"] = None,
        rpc_url: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, rpc_url, details)
        self.retry_after_seconds = retry_after_seconds


class ProviderTimeoutError(ProviderError):
    """RPC call did not complete within its timeout."""
    pass


class MalformedResponseError(ProviderError):
    """RPC response could not be decoded into the expected shape."""

    retryable = False

    def __init__(
        self,
        message: str,
        chain: Optional["ChainId"] = None,
        rpc_url: Optional[str] = None,
        raw_data: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, rpc_url, details)
        self.raw_data = raw_data[:500] if raw_data else None


# ─────────────────────────────────────────────────────────────
# Verification errors
# ─────────────────────────────────────────────────────────────

class FailureReason(Enum):
    """Why a verification attempt was rejected."""
    UNKNOWN_NONCE = "unknown_nonce"
    EXPIRED = "expired"
    CONSUMED = "consumed"
    SIGNER_MISMATCH = "signer_mismatch"
    MALFORMED_SIGNATURE = "malformed_signature"
    ADDRESS_COLLISION = "address_collision"
    DEPOSIT_NOT_OBSERVED = "deposit_not_observed"


class VerificationFailedError(DegenScoreError):
    """Ownership proof rejected. Never retried automatically."""

    def __init__(
        self,
        reason: FailureReason,
        message: Optional[str] = None,
        chain: Optional["ChainId"] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message or f"Verification failed: {reason.value}",
            chain,
            details,
        )
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


class AddressCollisionError(VerificationFailedError):
    """Address is already bound to a different user."""

    def __init__(
        self,
        address: str,
        chain: Optional["ChainId"] = None,
    ) -> None:
        super().__init__(
            FailureReason.ADDRESS_COLLISION,
            f"Address {address} is already verified by another user",
            chain,
            {"address": address},
        )
        self.address = address
