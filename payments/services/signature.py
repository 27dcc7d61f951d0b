import hashlib
import hmac
import string
from typing import Optional

HEX_DIGITS = set(string.hexdigits)


def compute_signature(raw_payload: bytes, shared_secret: str) -> str:
    return hmac.new(shared_secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


def verify_signature(raw_payload: bytes, signature_header: Optional[str], shared_secret: str) -> bool:
    """
    Checks an HMAC-SHA256 hex signature over the exact request bytes.

    Accepts an optional "sha256=" prefix. A missing, blank or non-hex header
    and an empty secret all verify as False.
    """
    if not shared_secret or not signature_header:
        return False

    candidate = signature_header.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    candidate = candidate.lower()

    if len(candidate) != hashlib.sha256().digest_size * 2 or not set(candidate) <= HEX_DIGITS:
        return False

    expected = compute_signature(raw_payload, shared_secret)
    return hmac.compare_digest(expected, candidate)
