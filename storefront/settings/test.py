from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
CACHES = {'default': {'BACKEND': 'django.core.cache.backends.locmem.LocMemCache'}}

APP_BASE_URL = 'https://api.example.com'
FRONTEND_URL = 'https://shop.example.com'
ORDERS_ADMIN_EMAILS = ''

PHONEPE = {
    'MERCHANT_ID': 'TESTMERCHANT',
    'SALT_KEY': 'test-salt-key',
    'SALT_INDEX': '1',
    'CLIENT_ID': 'test-client',
    'CLIENT_SECRET': 'test-secret',
    'CLIENT_VERSION': '1',
    'PRODUCTION': False,
    'TIMEOUT': 5,
    'EXPIRE_AFTER': 1200,
    'TOKEN_REFRESH_MARGIN': 300,
}

SUPABASE_URL = 'https://storage.example.com'
SUPABASE_SERVICE_ROLE_KEY = 'service-role-key'
DOWNLOADS = {
    'BACKEND': 'supabase',
    'URL_TTL': 60,
    'DEFAULT_BUCKET': 'products',
    'PRODUCTS_FOLDER': str(BASE_DIR / 'products'),
    'SIGNING_KEY': '',
}

RATE_LIMITS = {}

LOGGING = {'version': 1, 'disable_existing_loggers': False}
