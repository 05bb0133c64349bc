"""Signers turn one stored object into a short-lived retrieval URL."""
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote

import jwt
import requests
from django.conf import settings
from django.urls import reverse
from requests import RequestException

from payments.exceptions import AuthorizationError, ConfigurationError, GatewayError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

BACKEND_SUPABASE = "supabase"
BACKEND_LOCAL = "local"


def _downloads_settings() -> dict:
    return getattr(settings, "DOWNLOADS", {}) or {}


def safe_file_name(raw: str) -> str:
    """Strip any directory part and force a .pdf extension."""
    name = PurePosixPath(str(raw or "").replace("\\", "/")).name
    if not name or name in (".", ".."):
        raise ConfigurationError("No file configured for product")
    return name if name.lower().endswith(".pdf") else f"{name}.pdf"


class SupabaseStorageSigner:
    def __init__(self, base_url: Optional[str] = None, service_key: Optional[str] = None, timeout: float = 30):
        self.base_url = (base_url or getattr(settings, "SUPABASE_URL", "") or "").rstrip("/")
        self.service_key = service_key or getattr(settings, "SUPABASE_SERVICE_ROLE_KEY", "")
        self.timeout = timeout
        if not self.base_url or not self.service_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for signed downloads")

    def sign(self, bucket: str, object_key: str, expires_in: int, claims: Optional[dict] = None) -> str:
        key = "/".join(part for part in str(object_key).split("/") if part)
        url = f"{self.base_url}/storage/v1/object/sign/{quote(bucket)}/{quote(key)}"
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": "application/json",
        }
        try:
            resp = requests.post(url, json={"expiresIn": expires_in}, headers=headers, timeout=self.timeout)
        except RequestException as e:
            logger.error("Supabase sign request failed for %s/%s: %s", bucket, key, e)
            raise GatewayError("Could not create signed URL") from e

        try: data = resp.json()
        except ValueError: data = {}
        if not isinstance(data, dict):
            data = {}
        signed = data.get("signedURL") or data.get("signedUrl")
        if resp.status_code != 200 or not signed:
            logger.error("Supabase refused to sign %s/%s: status=%s body=%s", bucket, key, resp.status_code, resp.text[:500])
            raise GatewayError("Could not create signed URL")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"


class LocalFileSigner:
    """Fallback when no object store is configured: an HS256 token naming one
    file under ``PRODUCTS_FOLDER``, redeemed by ``downloads:file``."""

    algorithm = "HS256"

    def __init__(self, root: Optional[str] = None, secret: Optional[str] = None):
        conf = _downloads_settings()
        self.root = root or conf.get("PRODUCTS_FOLDER") or ""
        self.secret = secret or conf.get("SIGNING_KEY") or settings.SECRET_KEY
        if not self.root:
            raise ConfigurationError("DOWNLOADS['PRODUCTS_FOLDER'] is required for local downloads")

    def sign(self, bucket: str, object_key: str, expires_in: int, claims: Optional[dict] = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            **(claims or {}),
            "file": safe_file_name(object_key),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        }
        token = jwt.encode(payload, self.secret, algorithm=self.algorithm)
        path = reverse("downloads:file", kwargs={"token": token})
        return f"{getattr(settings, 'APP_BASE_URL', '').rstrip('/')}{path}"

    def resolve(self, token: str) -> tuple[Path, dict]:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthorizationError("Download link expired")
        except jwt.PyJWTError:
            raise AuthorizationError("Invalid download link")
        return self.sandboxed_path(claims.get("file", "")), claims

    def sandboxed_path(self, file_name: str) -> Path:
        root = Path(self.root).resolve()
        path = (root / safe_file_name(file_name)).resolve()
        if root not in path.parents:
            logger.error("Attempt to access file outside products folder: %s", path)
            raise ValidationError("Invalid file path")
        if not path.is_file():
            logger.warning("File not found on disk: %s", path)
            raise NotFoundError("File not found")
        return path


def get_signer():
    backend = _downloads_settings().get("BACKEND", BACKEND_SUPABASE)
    if backend == BACKEND_SUPABASE:
        return SupabaseStorageSigner()
    if backend == BACKEND_LOCAL:
        return LocalFileSigner()
    raise ConfigurationError(f"Unknown download backend {backend!r}")
