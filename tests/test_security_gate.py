"""Tests for trigger credential checks."""

import statistics
import time
from unittest import mock

import pytest

from automation_engine.core import security_gate
from automation_engine.core.exceptions import AuthenticationError
from automation_engine.core.security_gate import (
    RejectionReason, SecurityGate, compute_signature, validate_shared_token, validate_signed_payload
)


class TestSharedToken:
    """Shared token comparison."""

    def test_matching_token_accepted(self):
        assert validate_shared_token("s3cret", "s3cret") is True

    def test_wrong_token_rejected(self):
        assert validate_shared_token("s3cret!", "s3cret") is False
        assert validate_shared_token("S3CRET", "s3cret") is False

    @pytest.mark.parametrize("provided,configured", [
        (None, "s3cret"), ("", "s3cret"), ("s3cret", None), ("s3cret", ""), ("", ""), (None, None), ("  ", "  "),
    ])
    def test_blank_side_never_matches(self, provided, configured):
        assert validate_shared_token(provided, configured) is False

    def test_comparison_uses_compare_digest(self):
        with mock.patch.object(security_gate.hmac, "compare_digest", return_value=False) as compare:
            assert validate_shared_token("abc", "abd") is False
        compare.assert_called_once_with(b"abc", b"abd")


class TestSignedPayload:
    """HMAC-SHA256 payload signatures."""

    body = b'{"to": "inbox@example.com", "subject": "hi"}'

    def test_valid_signature_accepted(self):
        signature = compute_signature(self.body, "key")
        assert validate_signed_payload(self.body, "key", signature)

    def test_prefixed_and_uppercase_signature_accepted(self):
        signature = compute_signature(self.body, "key")
        assert validate_signed_payload(self.body, "key", f"sha256={signature.upper()}")

    def test_tampered_body_rejected(self):
        signature = compute_signature(self.body, "key")
        assert not validate_signed_payload(self.body + b" ", "key", signature)

    def test_wrong_secret_rejected(self):
        signature = compute_signature(self.body, "other")
        assert not validate_signed_payload(self.body, "key", signature)

    def test_missing_secret_or_signature_rejected(self):
        signature = compute_signature(self.body, "key")
        assert not validate_signed_payload(self.body, None, signature)
        assert not validate_signed_payload(self.body, "", signature)
        assert not validate_signed_payload(self.body, "key", None)


class TestSecurityGate:
    """Typed rejection reasons and enforcement."""

    def test_reasons(self):
        gate = SecurityGate()
        assert gate.check_shared_token("x", None).reason == RejectionReason.MISCONFIGURED
        assert gate.check_shared_token(None, "x").reason == RejectionReason.MISSING_CREDENTIAL
        assert gate.check_shared_token("y", "x").reason == RejectionReason.INVALID_CREDENTIAL
        assert gate.check_shared_token("x", "x")

    def test_non_text_credentials_rejected(self):
        gate = SecurityGate()
        assert gate.check_shared_token(123, "123").reason == RejectionReason.INVALID_CREDENTIAL
        assert gate.check_shared_token(["x"], "x").reason == RejectionReason.INVALID_CREDENTIAL
        assert gate.check_shared_token("123", 123).reason == RejectionReason.MISCONFIGURED
        assert gate.check_signed_payload(b"{}", "key", 42).reason == RejectionReason.INVALID_CREDENTIAL
        assert validate_shared_token(123, "123") is False
        assert not validate_signed_payload(b"{}", "key", b"abc")

    def test_signed_payload_reasons(self):
        gate = SecurityGate()
        assert gate.check_signed_payload(b"{}", "", "abc").reason == RejectionReason.MISCONFIGURED
        assert gate.check_signed_payload(b"{}", "key", "").reason == RejectionReason.MISSING_CREDENTIAL
        assert gate.check_signed_payload(b"{}", "key", "abc").reason == RejectionReason.INVALID_CREDENTIAL

    def test_require_raises_authentication_error(self):
        gate = SecurityGate()
        with pytest.raises(AuthenticationError) as exc_info:
            gate.require_shared_token("wrong", "right", workflow_id="wf-1", node_id="trigger")

        error = exc_info.value
        assert error.http_status == 401
        assert error.error_code == "UNAUTHORIZED"
        # the message never says which part of the credential was wrong
        assert error.message == "Authentication failed"

    def test_unconfigured_node_rejects_everything(self):
        gate = SecurityGate()
        for candidate in (None, "", "anything"):
            with pytest.raises(AuthenticationError):
                gate.require_shared_token(candidate, None)

    def test_require_passes_silently(self):
        SecurityGate().require_shared_token("right", "right")
        body = b"payload"
        SecurityGate().require_signed_payload(body, "key", compute_signature(body, "key"))


class TestComparisonTiming:
    """A near-miss token must not be measurably slower to reject than a total miss."""

    @staticmethod
    def median_batch_time(provided, configured, batches=41, per_batch=2000):
        samples = []
        for _ in range(batches):
            started = time.perf_counter()
            for _ in range(per_batch):
                validate_shared_token(provided, configured)
            samples.append(time.perf_counter() - started)
        return statistics.median(samples)

    def test_near_miss_and_total_miss_take_similar_time(self):
        configured = "k" * 4096
        near_miss = "k" * 4095 + "x"
        total_miss = "x" * 4096

        # warm up
        self.median_batch_time(near_miss, configured, batches=3)

        near = self.median_batch_time(near_miss, configured)
        total = self.median_batch_time(total_miss, configured)

        assert 0.5 < near / total < 2.0
