import re
import secrets
import time

from django.conf import settings

ALNUM = re.compile(r"[^A-Z0-9]")

TRANSACTION_ID_RE = re.compile(r"^TX_\d{13}_[0-9a-f]{12}$")
# ORDER_<PRODUCT>_<last4Phone>_<epochMillis>_<random4>
MERCHANT_ORDER_ID_RE = re.compile(r"^ORDER_[A-Z0-9]{1,20}_\d{4}_\d{13}_\d{4}$")

DEFAULT_PRODUCT_CODE = "BUNDLE"


def _millis() -> int:
    return int(time.time() * 1000)


def generate_transaction_id() -> str:
    return f"TX_{_millis():013d}_{secrets.token_hex(6)}"


def product_code(product_ids) -> str:
    """Single-product orders are tagged with the product; anything else is a bundle."""
    distinct = {str(pid) for pid in product_ids}
    if len(distinct) != 1:
        return DEFAULT_PRODUCT_CODE
    code = ALNUM.sub("", distinct.pop().upper())[:20]
    return code or DEFAULT_PRODUCT_CODE


def generate_merchant_order_id(customer_phone: str, code: str = DEFAULT_PRODUCT_CODE) -> str:
    digits = re.sub(r"\D", "", customer_phone or "")
    phone_suffix = digits[-4:].rjust(4, "0")
    nonce = 1000 + secrets.randbelow(9000)
    return f"ORDER_{code}_{phone_suffix}_{_millis():013d}_{nonce}"


def is_transaction_id(value: str) -> bool:
    return bool(TRANSACTION_ID_RE.match(value or ""))


def is_merchant_order_id(value: str) -> bool:
    return bool(MERCHANT_ORDER_ID_RE.match(value or ""))


def client_ip(request) -> str:
    """Address of the peer, or of the client as seen by the outermost trusted proxy.

    ``X-Forwarded-For`` is only read when ``TRUSTED_PROXY_COUNT`` is set; each
    trusted proxy appends one entry, so the client is that many from the right.
    """
    remote = request.META.get("REMOTE_ADDR", "")
    hops = int(getattr(settings, "TRUSTED_PROXY_COUNT", 0) or 0)
    if hops <= 0:
        return remote
    forwarded = [part.strip() for part in request.META.get("HTTP_X_FORWARDED_FOR", "").split(",") if part.strip()]
    if len(forwarded) < hops:
        return remote
    return forwarded[-hops]
