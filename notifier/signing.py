"""HMAC-SHA256 signing of outbound webhook payloads."""
import hashlib
import hmac

SIGNATURE_PREFIX = 'sha256='


def sign_payload(secret: str, body: bytes) -> str:
    """
    Sign a request body with the webhook secret.

    Args:
        secret: Shared webhook secret
        body: Exact bytes sent as the request body

    Returns:
        Signature header value, e.g. "sha256=3f5a..."
    """
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """
    Verify a signature produced by sign_payload.

    Receivers use this to authenticate deliveries. The prefix is optional.

    Returns:
        True if the signature matches
    """
    if not secret or not signature:
        return False

    candidate = signature.strip().lower()
    if candidate.startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]

    expected = sign_payload(secret, body)[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(expected.encode('utf-8'), candidate.encode('utf-8'))
