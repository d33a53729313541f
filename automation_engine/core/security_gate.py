"""Trigger authentication: shared tokens and signed payloads.

Every comparison goes through ``hmac.compare_digest`` so the time taken does not
depend on how many leading bytes of a candidate match. A trigger node without a
configured secret never admits anything.
"""

import hashlib
import hmac
from enum import Enum
from typing import Any, Optional, Union

from .exceptions import AuthenticationError
from .logging import get_logger

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


class RejectionReason(str, Enum):
    """Why the gate refused a credential."""
    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    MISCONFIGURED = "MISCONFIGURED"


class GateResult:
    """Outcome of a gate check."""

    __slots__ = ("accepted", "reason")

    def __init__(self, accepted: bool, reason: Optional[RejectionReason] = None):
        self.accepted = accepted
        self.reason = reason

    def __bool__(self) -> bool:
        return self.accepted

    def __repr__(self) -> str:
        return f"GateResult(accepted={self.accepted}, reason={self.reason})"


ACCEPTED = GateResult(True)


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, bytes)):
        return len(value.strip()) == 0
    return False


def _is_text(value: Any) -> bool:
    return isinstance(value, (str, bytes))


def compute_signature(payload: bytes, secret: Union[str, bytes]) -> str:
    """HMAC-SHA256 hex digest of the raw payload bytes."""
    return hmac.new(_as_bytes(secret), payload, hashlib.sha256).hexdigest()


def validate_shared_token(provided: Optional[str], configured: Optional[str]) -> bool:
    """Constant-time comparison of a presented token with the configured one."""
    if not _is_text(provided) or not _is_text(configured):
        return False
    if _is_blank(provided) or _is_blank(configured):
        return False
    return hmac.compare_digest(_as_bytes(provided), _as_bytes(configured))


def validate_signed_payload(payload: bytes, secret: Optional[str], signature: Optional[str]) -> bool:
    """Verify that ``signature`` is the keyed hash of ``payload`` under ``secret``."""
    if not _is_text(secret) or not isinstance(signature, str):
        return False
    if _is_blank(secret) or _is_blank(signature):
        return False

    candidate = signature.strip()
    if candidate.lower().startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]

    expected = compute_signature(payload, secret)
    return hmac.compare_digest(_as_bytes(expected), _as_bytes(candidate.lower()))


class SecurityGate:
    """Checks trigger credentials and reports a typed rejection reason."""

    def check_shared_token(self, provided: Optional[str], configured: Optional[str]) -> GateResult:
        if not _is_text(configured) or _is_blank(configured):
            return GateResult(False, RejectionReason.MISCONFIGURED)
        if _is_blank(provided):
            return GateResult(False, RejectionReason.MISSING_CREDENTIAL)
        if not _is_text(provided):
            return GateResult(False, RejectionReason.INVALID_CREDENTIAL)
        if validate_shared_token(provided, configured):
            return ACCEPTED
        return GateResult(False, RejectionReason.INVALID_CREDENTIAL)

    def check_signed_payload(self, payload: bytes, secret: Optional[str], signature: Optional[str]) -> GateResult:
        if not _is_text(secret) or _is_blank(secret):
            return GateResult(False, RejectionReason.MISCONFIGURED)
        if _is_blank(signature):
            return GateResult(False, RejectionReason.MISSING_CREDENTIAL)
        if not isinstance(signature, str):
            return GateResult(False, RejectionReason.INVALID_CREDENTIAL)
        if validate_signed_payload(payload, secret, signature):
            return ACCEPTED
        return GateResult(False, RejectionReason.INVALID_CREDENTIAL)

    def require_shared_token(self, provided: Optional[str], configured: Optional[str],
                             workflow_id: Optional[str] = None, node_id: Optional[str] = None) -> None:
        """Raise AuthenticationError unless the token matches.

        Raises:
            AuthenticationError: with the rejection reason attached
        """
        self._enforce(self.check_shared_token(provided, configured), workflow_id, node_id)

    def require_signed_payload(self, payload: bytes, secret: Optional[str], signature: Optional[str],
                               workflow_id: Optional[str] = None, node_id: Optional[str] = None) -> None:
        """Raise AuthenticationError unless the payload signature verifies."""
        self._enforce(self.check_signed_payload(payload, secret, signature), workflow_id, node_id)

    def _enforce(self, result: GateResult, workflow_id: Optional[str], node_id: Optional[str]) -> None:
        if result.accepted:
            return

        if result.reason == RejectionReason.MISCONFIGURED:
            logger.error(
                f"Trigger node {node_id} of workflow {workflow_id} has no credential configured; rejecting"
            )
        else:
            logger.warning(
                f"Trigger credential rejected for workflow {workflow_id} node {node_id}: {result.reason.value}"
            )

        raise AuthenticationError(
            "Authentication failed",
            reason=result.reason.value,
            workflow_id=workflow_id,
        )
