from django.core.exceptions import ImproperlyConfigured


class StorefrontError(Exception):
    """Base for errors that map onto a client-facing HTTP response."""

    status_code = 500

    def __init__(self, message: str = "", *, correlation_id: str = ""):
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id

    def as_dict(self) -> dict:
        return {"success": False, "message": self.message or self.__class__.__name__}


class ValidationError(StorefrontError):
    status_code = 400


class NotFoundError(StorefrontError):
    status_code = 404


class AuthorizationError(StorefrontError):
    status_code = 403


class GatewayError(StorefrontError):
    """Network or provider failure. Retryable by the caller."""

    status_code = 502


class IntegrityError(StorefrontError):
    """Callback checksum did not match; the payload must not be trusted."""

    status_code = 400


class CallbackDecodeError(StorefrontError):
    """Checksum matched but the payload is not base64-encoded JSON."""

    status_code = 400


class ConfigurationError(StorefrontError, ImproperlyConfigured):
    status_code = 500
