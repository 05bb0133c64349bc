from dotenv import load_dotenv
load_dotenv()

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "")
DEBUG = _bool("DJANGO_DEBUG")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "catalog",
    "payments",
    "downloads",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    "storefront.middleware.PaymentRequestLogMiddleware",
]

ROOT_URLCONF = "storefront.urls"
WSGI_APPLICATION = "storefront.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Asia/Kolkata"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# Security headers
SECURE_CONTENT_TYPE_NOSNIFF = True
SECURE_REFERRER_POLICY = "strict-origin-when-cross-origin"
X_FRAME_OPTIONS = "DENY"

CACHES = {
    "default": {
        "BACKEND": os.getenv("CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": os.getenv("CACHE_LOCATION", "storefront"),
    }
}

# Email
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USE_TLS = _bool("EMAIL_USE_TLS", "true")
EMAIL_HOST_USER = os.getenv("EMAIL_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_PASS", "")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", EMAIL_HOST_USER or "noreply@localhost")
ORDERS_FROM_EMAIL = os.getenv("ORDERS_FROM_EMAIL", "")
ORDERS_ADMIN_EMAILS = os.getenv("ORDERS_ADMIN_EMAILS", "")
EMAIL_FAIL_SILENTLY = _bool("EMAIL_FAIL_SILENTLY", "true")

# Public URLs
APP_BASE_URL = os.getenv("APP_BASE_URL", "")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:8080")

# PhonePe PG v2
PHONEPE = {
    "MERCHANT_ID": os.getenv("PHONEPE_MERCHANT_ID", ""),
    "SALT_KEY": os.getenv("PHONEPE_SALT_KEY", ""),
    "SALT_INDEX": os.getenv("PHONEPE_SALT_INDEX", "1"),
    "CLIENT_ID": os.getenv("PHONEPE_CLIENT_ID", ""),
    "CLIENT_SECRET": os.getenv("PHONEPE_CLIENT_SECRET", ""),
    "CLIENT_VERSION": os.getenv("PHONEPE_CLIENT_VERSION", "1"),
    "PRODUCTION": _bool("PHONEPE_PRODUCTION"),
    "AUTH_BASE_URL": os.getenv("PHONEPE_AUTH_BASE_URL", ""),
    "PAYMENT_BASE_URL": os.getenv("PHONEPE_PAYMENT_BASE_URL", ""),
    "TIMEOUT": float(os.getenv("PHONEPE_TIMEOUT", "30")),
    "EXPIRE_AFTER": int(os.getenv("PHONEPE_EXPIRE_AFTER", "1200")),
    "TOKEN_REFRESH_MARGIN": 300,
}

ORDER_AMOUNT_MIN = 1
ORDER_AMOUNT_MAX = 200000

# (requests, window seconds) per client IP
RATE_LIMITS = {
    "create_order": (10, 15 * 60),
    "status_check": (30, 60),
}
# reverse proxies in front of the app; 0 means use REMOTE_ADDR and ignore X-Forwarded-For
TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))

# Digital delivery
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
DOWNLOADS = {
    "BACKEND": os.getenv("DOWNLOADS_BACKEND", "supabase"),
    "URL_TTL": int(os.getenv("DOWNLOAD_URL_TTL", "60")),
    "DEFAULT_BUCKET": os.getenv("DOWNLOADS_BUCKET", "products"),
    "PRODUCTS_FOLDER": os.getenv("PRODUCTS_FOLDER", str(BASE_DIR / "products")),
    "SIGNING_KEY": os.getenv("DOWNLOAD_SIGNING_KEY", ""),
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django.request": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}
