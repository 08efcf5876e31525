import os
from pathlib import Path


def env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name, default):
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "django-insecure-servicehub-development-key")
DEBUG = env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [host.strip() for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if host.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "channels",
    "marketplace",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    "marketplace.middleware.ErrorLoggingMiddleware",
]

ROOT_URLCONF = "servicehub.urls"

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

WSGI_APPLICATION = "servicehub.wsgi.application"
ASGI_APPLICATION = "servicehub.asgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        # sqlite ignores select_for_update; IMMEDIATE makes every atomic block take the write lock up front
        "OPTIONS": {
            "transaction_mode": "IMMEDIATE",
            "timeout": env_int("SQLITE_TIMEOUT_SECONDS", 20),
        },
        "TEST": {
            "NAME": os.environ.get("SQLITE_TEST_PATH", str(BASE_DIR / "test_db.sqlite3")),
        },
    }
}

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": (
        "rest_framework_simplejwt.authentication.JWTAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ),
    "DEFAULT_PERMISSION_CLASSES": ("rest_framework.permissions.IsAuthenticated",),
    "EXCEPTION_HANDLER": "marketplace.exceptions.api_exception_handler",
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "marketplace": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}

MATCHING_BATCH_SIZE = env_int("MATCHING_BATCH_SIZE", 5)
MATCHING_REMATCH_POOL = os.environ.get("MATCHING_REMATCH_POOL", "fresh")
MATCHING_MAX_CONCURRENT_ASSIGNMENTS = env_int("MATCHING_MAX_CONCURRENT_ASSIGNMENTS", 5)
MATCHING_UNKNOWN_DISTANCE_MILES = float(os.environ.get("MATCHING_UNKNOWN_DISTANCE_MILES", "50"))
OFFER_TTL_MINUTES_BY_URGENCY = {
    "emergency": env_int("OFFER_TTL_EMERGENCY_MINUTES", 10),
    "high": env_int("OFFER_TTL_HIGH_MINUTES", 15),
    "medium": env_int("OFFER_TTL_MEDIUM_MINUTES", 30),
    "low": env_int("OFFER_TTL_LOW_MINUTES", 60),
}
LIFECYCLE_LOCK_TTL_SECONDS = env_int("LIFECYCLE_LOCK_TTL_SECONDS", 90)

NOTIFIER_WEBHOOK_URL = os.environ.get("NOTIFIER_WEBHOOK_URL", "")
NOTIFIER_WEBHOOK_TOKEN = os.environ.get("NOTIFIER_WEBHOOK_TOKEN", "")
NOTIFIER_RETRY_ATTEMPTS = env_int("NOTIFIER_RETRY_ATTEMPTS", 3)
NOTIFIER_RETRY_BACKOFF_SECONDS = float(os.environ.get("NOTIFIER_RETRY_BACKOFF_SECONDS", "0.5"))
NOTIFIER_WEBHOOK_TIMEOUT_SECONDS = float(os.environ.get("NOTIFIER_WEBHOOK_TIMEOUT_SECONDS", "3"))

ERROR_LOGGING_ENABLED = env_bool("ERROR_LOGGING_ENABLED", True)
