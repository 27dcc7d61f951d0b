"""
Unit tests for payments/services/signature.py.

The HMAC is computed over raw bytes; every malformed input must fail closed.
"""
import hashlib
import hmac
import json

from payments.services.signature import compute_signature, verify_signature

SECRET = "test_webhook_secret_123"
PAYLOAD = b'{"event":"transaction.updated","data":{"transaction":{"id":"12-abc-34","status":"APPROVED"}}}'


def expected(payload: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class TestVerifySignature:
    def test_valid_signature(self):
        assert verify_signature(PAYLOAD, expected(PAYLOAD), SECRET) is True

    def test_compute_matches_reference_hmac(self):
        assert compute_signature(PAYLOAD, SECRET) == expected(PAYLOAD)

    def test_sha256_prefix_accepted(self):
        assert verify_signature(PAYLOAD, "sha256=" + expected(PAYLOAD), SECRET) is True

    def test_uppercase_hex_accepted(self):
        assert verify_signature(PAYLOAD, expected(PAYLOAD).upper(), SECRET) is True

    def test_wrong_secret_rejected(self):
        assert verify_signature(PAYLOAD, expected(PAYLOAD, "other_secret"), SECRET) is False

    def test_reserialized_payload_rejected(self):
        # Same JSON, different bytes: the signature no longer matches
        reserialized = json.dumps(json.loads(PAYLOAD), indent=2).encode()
        assert verify_signature(reserialized, expected(PAYLOAD), SECRET) is False

    def test_tampered_payload_rejected(self):
        tampered = PAYLOAD.replace(b"APPROVED", b"DECLINED")
        assert verify_signature(tampered, expected(PAYLOAD), SECRET) is False


class TestFailClosed:
    def test_missing_header(self):
        assert verify_signature(PAYLOAD, None, SECRET) is False

    def test_blank_header(self):
        assert verify_signature(PAYLOAD, "   ", SECRET) is False

    def test_non_hex_header(self):
        assert verify_signature(PAYLOAD, "invalid_signature", SECRET) is False

    def test_truncated_header(self):
        assert verify_signature(PAYLOAD, expected(PAYLOAD)[:32], SECRET) is False

    def test_empty_secret(self):
        assert verify_signature(PAYLOAD, expected(PAYLOAD, ""), "") is False
