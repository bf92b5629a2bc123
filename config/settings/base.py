"""
Django settings for the code ledger - Base Configuration
Shared by every environment; dev/test/prod override what they need.
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
]

THIRD_PARTY_APPS: list[str] = [
    "django_ratelimit",
]

LOCAL_APPS: list[str] = [
    "apps.common",
    "apps.audit",
    "apps.promotions",  # 🎟️ Referral & reward code ledger
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE: list[str] = [
    "apps.common.middleware.RequestIDMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

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

WSGI_APPLICATION = "config.wsgi.application"
ASGI_APPLICATION = "config.asgi.application"

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "codeledger"),
        "USER": os.environ.get("DB_USER", "codeledger"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "development_password"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": 60,
        "OPTIONS": {
            "application_name": "codeledger",
            "connect_timeout": int(os.environ.get("DB_CONNECT_TIMEOUT", "5")),
        },
    }
}

# ===============================================================================
# AUTHENTICATION
# ===============================================================================

# The identity provider's subject id arrives as the username
AUTHENTICATION_BACKENDS = [
    "django.contrib.auth.backends.ModelBackend",
]

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator", "OPTIONS": {"min_length": 12}},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
]

# ===============================================================================
# INTERNATIONALIZATION
# ===============================================================================

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# ===============================================================================
# CACHE CONFIGURATION (shared store for rate limiting)
# ===============================================================================

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.db.DatabaseCache",
        "LOCATION": "django_cache_table",
        "KEY_PREFIX": "codeledger",
        "OPTIONS": {
            "MAX_ENTRIES": 10000,
            "CULL_FREQUENCY": 3,
        },
        "TIMEOUT": 300,
    }
}

# ===============================================================================
# SESSION & COOKIE SETTINGS
# ===============================================================================

SESSION_COOKIE_AGE = 86400  # 24 hours
SESSION_COOKIE_HTTPONLY = True
CSRF_COOKIE_HTTPONLY = True
CSRF_TRUSTED_ORIGINS: list[str] = []

SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = "DENY"
DATA_UPLOAD_MAX_MEMORY_SIZE = 1048576  # 1MB, webhook and API bodies are small

# ===============================================================================
# CLIENT IP DETECTION
# ===============================================================================

# Only honour proxy headers from these peers (CIDR allowed)
IPWARE_TRUSTED_PROXY_LIST: list[str] = [
    proxy.strip() for proxy in os.environ.get("IPWARE_TRUSTED_PROXY_LIST", "").split(",") if proxy.strip()
]

# ===============================================================================
# RATE LIMITING CONFIGURATION 🔒
# ===============================================================================

RATELIMIT_USE_CACHE = "default"
RATELIMIT_ENABLE = True

# ===============================================================================
# PROMOTIONS - REFERRAL & REWARD CODE LEDGER 🎟️
# ===============================================================================

PROMOTIONS: dict[str, Any] = {
    "REFERRAL_CODE_PREFIX": os.environ.get("PROMOTIONS_REFERRAL_CODE_PREFIX", "REF"),
    "REFERRAL_VALIDITY_YEARS": int(os.environ.get("PROMOTIONS_REFERRAL_VALIDITY_YEARS", "50")),
    "REWARD_CODE_PREFIX": os.environ.get("PROMOTIONS_REWARD_CODE_PREFIX", "REWARD"),
    "REWARD_DISCOUNT_PERCENT": Decimal(os.environ.get("PROMOTIONS_REWARD_DISCOUNT_PERCENT", "15")),
    "REWARD_VALIDITY_DAYS": int(os.environ.get("PROMOTIONS_REWARD_VALIDITY_DAYS", "3")),
    "CODE_GENERATION_MAX_ATTEMPTS": int(os.environ.get("PROMOTIONS_CODE_GENERATION_MAX_ATTEMPTS", "5")),
    "RECONCILE_MAX_RETRIES": int(os.environ.get("PROMOTIONS_RECONCILE_MAX_RETRIES", "3")),
    "ORDER_WEBHOOK_SECRET": os.environ.get("PROMOTIONS_ORDER_WEBHOOK_SECRET", ""),
}

# ===============================================================================
# DEFAULT AUTO FIELD
# ===============================================================================

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ===============================================================================
# SECURITY SETTINGS (Base - override in prod.py)
# ===============================================================================

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY")
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings

    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2,
    )
    SECRET_KEY = "django-insecure-dev-key-only-change-in-production-or-tests"  # noqa: S105


def validate_production_secret_key() -> None:
    """Validate SECRET_KEY meets production security requirements"""
    if SECRET_KEY and SECRET_KEY.startswith("django-insecure-"):
        raise ValueError(
            "🔥 CRITICAL SECURITY ERROR: Cannot use insecure SECRET_KEY in production! "
            "Generate a secure key with django.core.management.utils.get_random_secret_key()"
        )
