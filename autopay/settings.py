"""
Django settings for the autopay project.

Values come from the environment (a `.env` file at the project root is loaded
if present). Bank credentials and key material paths live in `BANK`; the
lifecycle's retry and scheduling knobs live in `MANDATE_ENGINE`.
"""
import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _getenv_bool(name, default=False):
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


SECRET_KEY = os.getenv("SECRET_KEY", "django-insecure-change-me")

DEBUG = _getenv_bool("DEBUG", False)

ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]


INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "mandates",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "autopay.urls"

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

WSGI_APPLICATION = "autopay.wsgi.application"


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
TIME_ZONE = os.getenv("TIME_ZONE", "Asia/Kolkata")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"


REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": (
        "rest_framework_simplejwt.authentication.JWTAuthentication",
    ),
    "DEFAULT_PERMISSION_CLASSES": (
        "rest_framework.permissions.IsAuthenticated",
    ),
}

SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=int(os.getenv("JWT_ACCESS_MINUTES", "60"))),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=int(os.getenv("JWT_REFRESH_DAYS", "7"))),
}


# Bank UPI mandate API
BANK = {
    "BASE_URL": os.getenv("BANK_BASE_URL", ""),
    "API_KEY": os.getenv("BANK_API_KEY", ""),
    "MERCHANT_ID": os.getenv("BANK_MERCHANT_ID", ""),
    "SUB_MERCHANT_ID": os.getenv("BANK_SUB_MERCHANT_ID", ""),
    "TERMINAL_ID": os.getenv("BANK_TERMINAL_ID", ""),
    "MERCHANT_NAME": os.getenv("BANK_MERCHANT_NAME", ""),
    "PUBLIC_CERT_PATH": os.getenv("BANK_PUBLIC_CERT_PATH", ""),
    "PRIVATE_KEY_PATH": os.getenv("BANK_PRIVATE_KEY_PATH", ""),
    "PRIVATE_KEY_PASSPHRASE": os.getenv("BANK_PRIVATE_KEY_PASSPHRASE", ""),
    "TIMEOUT": int(os.getenv("BANK_TIMEOUT", "30")),
}

# Lifecycle scheduling and retry policy
MANDATE_ENGINE = {
    "SCHEDULER_TOKEN": os.getenv("MANDATE_SCHEDULER_TOKEN", ""),
    "EXECUTION_BACKOFF_HOURS": float(os.getenv("MANDATE_EXECUTION_BACKOFF_HOURS", "12")),
    "NOTIFICATION_BACKOFF_HOURS": float(os.getenv("MANDATE_NOTIFICATION_BACKOFF_HOURS", "1")),
    "NOTIFICATION_WINDOW_HOURS": float(os.getenv("MANDATE_NOTIFICATION_WINDOW_HOURS", "48")),
    "EXHAUSTION_POLICY": os.getenv("MANDATE_EXHAUSTION_POLICY", "ADVANCE"),
    "LEASE_SECONDS": int(os.getenv("MANDATE_LEASE_SECONDS", "300")),
    "MAX_WORKERS": int(os.getenv("MANDATE_MAX_WORKERS", "4")),
    "DEFAULT_AMOUNT": os.getenv("MANDATE_DEFAULT_AMOUNT", "100.00"),
}


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "root": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "INFO")},
}
