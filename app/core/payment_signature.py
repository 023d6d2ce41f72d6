"""HMAC signature checks for checkout callbacks and provider webhooks."""

import hashlib
import hmac


def compute_signature(order_id: str, payment_id: str, secret: str) -> str:
    """HMAC-SHA256 hex digest over ``order_id|payment_id``."""
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """
    Validate a checkout signature.

    Pure and deterministic; any mismatch (including empty inputs) is a reject.

    Args:
        order_id: Provider order id
        payment_id: Provider payment id
        signature: Signature returned by the checkout widget
        secret: Shared key secret

    Returns:
        True only when the signature matches
    """
    if not (order_id and payment_id and signature and secret):
        return False
    expected = compute_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature)


def verify_webhook_body(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Validate a webhook signature computed over the raw request body."""
    if not (signature and secret):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)
