from django.conf import settings
from django.core.checks import Error, Tags, Warning, register


@register(Tags.security)
def check_gateway_settings(app_configs, **kwargs):
    errors = []
    if not getattr(settings, "APP_BASE_URL", ""):
        errors.append(Error(
            "APP_BASE_URL is not set.",
            hint="Set APP_BASE_URL to the public backend URL; gateway redirects are built on it.",
            id="payments.E001",
        ))
    phonepe = getattr(settings, "PHONEPE", {}) or {}
    for key in ("MERCHANT_ID", "SALT_KEY"):
        if not phonepe.get(key):
            errors.append(Error(
                f"PHONEPE['{key}'] is not set.",
                hint=f"Set PHONEPE_{key} in the environment.",
                id="payments.E002",
            ))
    if phonepe.get("PRODUCTION") and not (phonepe.get("CLIENT_ID") and phonepe.get("CLIENT_SECRET")):
        errors.append(Error(
            "PHONEPE CLIENT_ID/CLIENT_SECRET are required in production.",
            id="payments.E003",
        ))
    if not getattr(settings, "FRONTEND_URL", ""):
        errors.append(Warning(
            "FRONTEND_URL is not set; payment redirects will be relative.",
            id="payments.W001",
        ))
    return errors
