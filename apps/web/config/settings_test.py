"""Test settings - local SQLite and dummy secrets."""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("POS_WORKER_SECRET", "test-worker-secret")

from apps.web.config.settings import *  # noqa: E402, F403

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

POS_ENVIRONMENT = "sandbox"
POS_ALLOW_UNSIGNED_WEBHOOKS = False
POS_WORKER_BUDGET_SECONDS = 50.0
