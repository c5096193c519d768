"""
Django settings for Tableside.

Secrets come from the environment - never hardcode credentials.
Run with: uv run python apps/web/manage.py runserver
"""

from pathlib import Path

import environ  # type: ignore[import-untyped]

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# Initialize environ
env = environ.Env(
    DEBUG=(bool, False),
    ALLOWED_HOSTS=(list, []),
    POS_ENVIRONMENT=(str, "sandbox"),
    POS_WORKER_SECRET=(str, ""),
    POS_JOB_MAX_ATTEMPTS=(int, 5),
    POS_WORKER_BUDGET_SECONDS=(float, 50.0),
    POS_RECONCILE_MINUTES_BACK=(int, 10),
    POS_HTTP_TIMEOUT_SECONDS=(float, 10.0),
    LOG_LEVEL=(str, "INFO"),
)

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = env("SECRET_KEY")

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = env("DEBUG")

ALLOWED_HOSTS = env("ALLOWED_HOSTS")

# Application definition
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Local apps
    "apps.web.core",
    "apps.web.pos",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    # Custom middleware
    "apps.web.core.middleware.ClientMiddleware",
]

ROOT_URLCONF = "apps.web.config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "apps.web.config.wsgi.application"

# Database
# https://docs.djangoproject.com/en/5.1/ref/settings/#databases
DATABASES = {
    "default": env.db("DATABASE_URL"),
}

# Custom user model
AUTH_USER_MODEL = "core.User"

# Password validation
_V = "django.contrib.auth.password_validation"
AUTH_PASSWORD_VALIDATORS = [
    {"NAME": f"{_V}.UserAttributeSimilarityValidator"},
    {"NAME": f"{_V}.MinimumLengthValidator"},
    {"NAME": f"{_V}.CommonPasswordValidator"},
    {"NAME": f"{_V}.NumericPasswordValidator"},
]

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# Static files (CSS, JavaScript, Images)
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR.parent.parent / "staticfiles"  # /app/staticfiles in production

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Logging
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default"},
    },
    "root": {"handlers": ["console"], "level": env("LOG_LEVEL")},
}

# =============================================================================
# POS integration
# =============================================================================

# sandbox | production - selects provider API hosts
POS_ENVIRONMENT = env("POS_ENVIRONMENT")

# Shared secret for the cron-triggered worker endpoint
POS_WORKER_SECRET = env("POS_WORKER_SECRET")

POS_JOB_MAX_ATTEMPTS = env("POS_JOB_MAX_ATTEMPTS")
POS_WORKER_BUDGET_SECONDS = env("POS_WORKER_BUDGET_SECONDS")
POS_HTTP_TIMEOUT_SECONDS = env("POS_HTTP_TIMEOUT_SECONDS")

# Window polled by the reconcile job for orders whose webhook never arrived
POS_RECONCILE_MINUTES_BACK = env("POS_RECONCILE_MINUTES_BACK")

# Accept webhooks for providers with no signing secret configured
POS_ALLOW_UNSIGNED_WEBHOOKS = env.bool("POS_ALLOW_UNSIGNED_WEBHOOKS", default=DEBUG)

# Provider credentials (SQUARE_ACCESS_TOKEN[_{REF}], TOAST_CLIENT_ID[_{REF}],
# CLOVER_ACCESS_TOKEN[_{REF}] and the webhook signing secrets) are read from
# the environment per location by apps.web.pos.registry.
