import base64
import binascii
import hashlib
import hmac
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from functools import lru_cache
from typing import Callable, Optional

import requests
from django.conf import settings
from requests import RequestException

from ..exceptions import CallbackDecodeError, ConfigurationError, GatewayError, ValidationError

logger = logging.getLogger(__name__)

GATEWAY = "phonepe"

SANDBOX_BASE_URL = "https://api-preprod.phonepe.com/apis/pg-sandbox"
PROD_AUTH_BASE_URL = "https://api.phonepe.com/apis/identity-manager"
PROD_PAYMENT_BASE_URL = "https://api.phonepe.com/apis/pg"

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


# ---------- Provider status ----------
class ProviderState(Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"


_STATE_TABLE = {
    "COMPLETED": ProviderState.COMPLETED,
    "SUCCESS": ProviderState.COMPLETED,
    "PAYMENT_SUCCESS": ProviderState.COMPLETED,
    "FAILED": ProviderState.FAILED,
    "PAYMENT_ERROR": ProviderState.FAILED,
    "PAYMENT_DECLINED": ProviderState.FAILED,
    "PENDING": ProviderState.PENDING,
    "PAYMENT_PENDING": ProviderState.PENDING,
    "INITIATED": ProviderState.PENDING,
}


def parse_provider_state(raw) -> ProviderState:
    key = str(raw or "").strip().upper()
    state = _STATE_TABLE.get(key)
    if state is None:
        logger.warning("Unrecognised PhonePe state %r; treating as pending", raw)
        return ProviderState.UNKNOWN
    return state


@dataclass(frozen=True)
class ProviderStatus:
    """One observation of a payment's state at the provider."""

    state: ProviderState
    raw_state: str = ""
    gateway_transaction_id: str = ""
    payment_method: str = ""
    failure_reason: str = ""
    payload: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "ProviderStatus":
        """Accepts the v2 order-status body, the v2 webhook envelope
        (``{"event", "payload"}``) and the redirect callback body
        (``{"code", "data": {...}}``)."""
        payload = payload or {}
        body = payload
        for key in ("payload", "data"):
            if isinstance(payload.get(key), dict):
                body = payload[key]
                break

        raw = body.get("state") or body.get("status") or payload.get("code") or ""
        details = body.get("paymentDetails") or []
        latest = details[-1] if details and isinstance(details[-1], dict) else {}
        instrument = body.get("paymentInstrument") or {}

        return cls(
            state=parse_provider_state(raw),
            raw_state=str(raw),
            gateway_transaction_id=str(body.get("transactionId") or latest.get("transactionId") or ""),
            payment_method=str(instrument.get("type") or latest.get("paymentMode") or "UPI"),
            failure_reason=str(
                body.get("error")
                or body.get("errorCode")
                or body.get("detailedErrorCode")
                or latest.get("errorCode")
                or payload.get("message")
                or "Payment failed"
            ),
            payload=payload,
        )


# ---------- Access credential ----------
@dataclass(frozen=True)
class AccessCredential:
    token: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class TokenCache:
    """Holds the current credential and coalesces concurrent refreshes.

    Readers never lock; the credential is replaced as a whole so a reader
    sees either the old pair or the new one.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._credential: Optional[AccessCredential] = None
        self._refresh_lock = threading.Lock()

    @property
    def credential(self) -> Optional[AccessCredential]:
        return self._credential

    def get(self, refresh: Callable[[], Optional[AccessCredential]]) -> Optional[str]:
        credential = self._credential
        if credential is not None and credential.is_fresh(self.clock()):
            return credential.token

        with self._refresh_lock:
            # another thread may have refreshed while we waited
            credential = self._credential
            if credential is not None and credential.is_fresh(self.clock()):
                return credential.token
            credential = refresh()
            if credential is None:
                return None
            self._credential = credential
            return credential.token

    def clear(self) -> None:
        self._credential = None


# ---------- Request / result types ----------
@dataclass
class PaymentRequest:
    amount: Decimal
    customer_phone: str
    customer_name: str
    customer_email: str
    merchant_transaction_id: str
    merchant_order_id: str


@dataclass
class PaymentInitiationResult:
    success: bool
    payment_url: str = ""
    merchant_transaction_id: str = ""
    merchant_order_id: str = ""
    state: str = ""
    error: str = ""
    debug: dict = field(default_factory=dict)


@dataclass
class CallbackVerification:
    is_valid: bool
    data: Optional[dict] = None
    error: str = ""


def _decode_json(resp) -> tuple[dict, bool]:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": resp.text}, False
    if not isinstance(data, dict):
        return {"raw": data}, False
    return data, True


def _amount_paise(amount) -> int:
    try:
        return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise ValidationError("Invalid amount")


class PhonePeClient:
    def __init__(self, config: Optional[dict] = None, *, app_base_url: Optional[str] = None,
                 token_cache: Optional[TokenCache] = None):
        config = dict(getattr(settings, "PHONEPE", {}) if config is None else config)
        self.merchant_id = config.get("MERCHANT_ID", "")
        self.salt_key = config.get("SALT_KEY", "")
        self.salt_index = str(config.get("SALT_INDEX", "1"))
        self.client_id = config.get("CLIENT_ID", "")
        self.client_secret = config.get("CLIENT_SECRET", "")
        self.client_version = str(config.get("CLIENT_VERSION", "1"))
        self.production = bool(config.get("PRODUCTION", False))
        self.auth_base_url = (
            config.get("AUTH_BASE_URL") or (PROD_AUTH_BASE_URL if self.production else SANDBOX_BASE_URL)
        ).rstrip("/")
        self.payment_base_url = (
            config.get("PAYMENT_BASE_URL") or (PROD_PAYMENT_BASE_URL if self.production else SANDBOX_BASE_URL)
        ).rstrip("/")
        self.timeout = float(config.get("TIMEOUT", 30))
        self.expire_after = int(config.get("EXPIRE_AFTER", 1200))
        self.refresh_margin = int(config.get("TOKEN_REFRESH_MARGIN", 300))

        self.app_base_url = (app_base_url or getattr(settings, "APP_BASE_URL", "") or "").rstrip("/")
        if not self.app_base_url:
            raise ConfigurationError("APP_BASE_URL is required to build the payment redirect URL")

        self.token_cache = token_cache or TokenCache()
        logger.info("PhonePe client initialised in %s mode", "production" if self.production else "sandbox")

    # ---------- Credentials ----------
    def _exchange_credentials(self) -> Optional[AccessCredential]:
        url = f"{self.auth_base_url}/v1/oauth/token"
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "client_version": self.client_version,
        }
        try:
            resp = requests.post(url, data=form, headers=FORM_HEADERS, timeout=self.timeout)
            resp.raise_for_status()
            body, ok = _decode_json(resp)
            token = body.get("access_token") if ok else None
            if not token:
                raise GatewayError("No access_token in PhonePe OAuth response")
            expires_at = self._credential_expiry(body)
        except (RequestException, GatewayError) as e:
            logger.error("PhonePe OAuth token exchange failed: %s", e)
            if not self.production:
                logger.warning("Sandbox mode: continuing without an access token")
                return None
            if isinstance(e, GatewayError):
                raise
            raise GatewayError(f"Token exchange failed: {e}") from e

        logger.info("PhonePe OAuth token refreshed")
        return AccessCredential(token=token, expires_at=expires_at)

    def _credential_expiry(self, body: dict) -> float:
        """Absolute expiry minus the refresh margin; ``expires_at`` wins over ``expires_in``."""
        try:
            if body.get("expires_at"):
                return float(body["expires_at"]) - self.refresh_margin
            expires_in = float(body.get("expires_in") or 0)
        except (TypeError, ValueError):
            raise GatewayError("Invalid token expiry in PhonePe OAuth response")
        if expires_in <= 0:
            raise GatewayError("No token expiry in PhonePe OAuth response")
        return self.token_cache.clock() + expires_in - self.refresh_margin

    def get_access_token(self) -> Optional[str]:
        return self.token_cache.get(self._exchange_credentials)

    # ---------- Payments ----------
    @staticmethod
    def validate_payment_request(request: PaymentRequest) -> None:
        try:
            amount = Decimal(str(request.amount))
        except InvalidOperation:
            raise ValidationError("Invalid amount")
        if amount <= 0:
            raise ValidationError("Invalid amount")
        if not request.customer_phone or len(request.customer_phone) < 10:
            raise ValidationError("Invalid phone number")
        if not (request.customer_name or "").strip():
            raise ValidationError("Customer name required")

    def callback_url(self, transaction_id: str) -> str:
        return f"{self.app_base_url}/payments/callback/{transaction_id}"

    def build_payment_payload(self, request: PaymentRequest) -> dict:
        return {
            "merchantOrderId": request.merchant_order_id,
            "amount": _amount_paise(request.amount),
            "expireAfter": self.expire_after,
            "metaInfo": {
                "udf1": request.customer_name or "NA",
                "udf2": request.customer_email or "NA",
                "udf3": request.customer_phone or "NA",
                "udf4": "storefront",
                "udf5": request.merchant_transaction_id,
            },
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": "Redirecting to PhonePe",
                "merchantUrls": {"redirectUrl": self.callback_url(request.merchant_transaction_id)},
            },
        }

    def initiate_payment(self, request: PaymentRequest) -> PaymentInitiationResult:
        self.validate_payment_request(request)
        payload = self.build_payment_payload(request)

        token = self.get_access_token()
        if not token:
            raise GatewayError("Access token required for PhonePe payment",
                               correlation_id=request.merchant_order_id)

        logger.info(
            "Initiating PhonePe payment merchantOrderId=%s transactionId=%s amount=%s",
            request.merchant_order_id, request.merchant_transaction_id, request.amount,
        )
        failed = PaymentInitiationResult(
            success=False,
            merchant_transaction_id=request.merchant_transaction_id,
            merchant_order_id=request.merchant_order_id,
        )
        try:
            resp = requests.post(
                f"{self.payment_base_url}/checkout/v2/pay",
                json=payload,
                headers={**JSON_HEADERS, "Authorization": f"O-Bearer {token}"},
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.error("PhonePe pay request failed for merchantOrderId=%s: %s", request.merchant_order_id, e)
            failed.error = f"Gateway request failed: {e}"
            return failed

        data, _ = _decode_json(resp)
        if resp.status_code == 200 and data.get("redirectUrl"):
            return PaymentInitiationResult(
                success=True,
                payment_url=data["redirectUrl"],
                merchant_transaction_id=request.merchant_transaction_id,
                merchant_order_id=request.merchant_order_id,
                state=str(data.get("state", "")),
            )

        failed.error = str(data.get("message") or data.get("error") or f"Unexpected API response (HTTP {resp.status_code})")
        failed.debug = {"status_code": resp.status_code, "response_data": data}
        logger.error(
            "PhonePe pay rejected merchantOrderId=%s status=%s body=%s",
            request.merchant_order_id, resp.status_code, json.dumps(data)[:800],
        )
        return failed

    def check_payment_status(self, merchant_order_id: str) -> dict:
        if not merchant_order_id:
            raise ValidationError("merchantOrderId required")
        token = self.get_access_token()
        if not token:
            raise GatewayError("Missing PhonePe access token", correlation_id=merchant_order_id)

        url = f"{self.payment_base_url}/checkout/v2/order/{merchant_order_id}/status"
        headers = {**JSON_HEADERS, "Authorization": f"O-Bearer {token}", "X-MERCHANT-ID": self.merchant_id}
        try:
            resp = requests.get(url, headers=headers, timeout=self.timeout)
        except RequestException as e:
            logger.error("PhonePe status request failed for merchantOrderId=%s: %s", merchant_order_id, e)
            raise GatewayError(f"Status check failed: {e}", correlation_id=merchant_order_id) from e

        data, ok = _decode_json(resp)
        if resp.status_code != 200 or not ok:
            message = data.get("message") or f"HTTP {resp.status_code}"
            logger.error(
                "PhonePe status check rejected merchantOrderId=%s status=%s body=%s",
                merchant_order_id, resp.status_code, json.dumps(data)[:800],
            )
            raise GatewayError(f"Status check failed: {message}", correlation_id=merchant_order_id)
        return data

    # ---------- Callbacks ----------
    def compute_checksum(self, response: str) -> str:
        digest = hashlib.sha256((response + self.salt_key).encode("utf-8")).hexdigest()
        return f"{digest}###{self.salt_index}"

    def verify_callback(self, response: Optional[str], checksum: Optional[str]) -> CallbackVerification:
        if not response or not checksum:
            return CallbackVerification(is_valid=False, error="Missing response or checksum")

        expected = self.compute_checksum(response)
        if not hmac.compare_digest(expected.encode("utf-8"), checksum.encode("utf-8")):
            return CallbackVerification(is_valid=False, error="Checksum mismatch")

        try:
            decoded = json.loads(base64.b64decode(response, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise CallbackDecodeError(f"Callback payload is not base64 JSON: {e}")
        if not isinstance(decoded, dict):
            raise CallbackDecodeError("Callback payload must be a JSON object")
        return CallbackVerification(is_valid=True, data=decoded)


@lru_cache(maxsize=None)
def get_client() -> PhonePeClient:
    """Process-wide client so the credential cache is shared across requests."""
    return PhonePeClient()
