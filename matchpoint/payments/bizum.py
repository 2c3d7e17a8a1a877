"""Bizum redirect gateway: signed payment links and callback verification.

Both directions are authenticated with HMAC-SHA256 over the
pipe-joined fields ``order|amount|status`` (``status`` is empty for the
outgoing redirect) using the merchant signing secret.
"""

import hashlib
import hmac
import uuid
from urllib.parse import urlencode

from matchpoint.config import settings

CALLBACK_OK = "OK"
CALLBACK_KO = "KO"


def order_reference(ledger_entry_id: uuid.UUID) -> str:
    """Gateway order ids are limited to 12 alphanumeric characters."""
    return ledger_entry_id.hex[:12].upper()


def sign(order: str, amount_cents: int, status: str = "", secret: str | None = None) -> str:
    key = (secret if secret is not None else settings.bizum_signing_secret).encode()
    message = f"{order}|{amount_cents}|{status}".encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def verify(order: str, amount_cents: int, status: str, signature: str, secret: str | None = None) -> bool:
    expected = sign(order, amount_cents, status, secret)
    return hmac.compare_digest(expected, signature or "")


def is_configured() -> bool:
    return bool(settings.bizum_merchant_code and settings.bizum_signing_secret)


def build_redirect_url(order: str, amount_cents: int) -> str:
    """Where the player is sent to approve the payment on their phone."""
    query = urlencode(
        {
            "merchant": settings.bizum_merchant_code,
            "order": order,
            "amount": amount_cents,
            "currency": settings.currency.upper(),
            "signature": sign(order, amount_cents),
        }
    )
    return f"{settings.bizum_redirect_url}?{query}"
