"""Signed URL utilities."""

from __future__ import annotations

import os

from itsdangerous import URLSafeTimedSerializer

APP_URL = os.environ.get("APP_URL", "https://app.metricpulse.io")
PREFERENCES_MAX_AGE = int(os.environ.get("SIGNED_URL_EXPIRY", 60 * 60 * 24 * 14))


def _serializer() -> URLSafeTimedSerializer:
    secret = os.environ.get("SIGNING_SECRET", "change-me")
    return URLSafeTimedSerializer(secret_key=secret)


def preferences_url(user_id: str) -> str:
    token = _serializer().dumps({"user_id": user_id}, salt="preferences")
    return f"{APP_URL}/settings/email?token={token}"


def load_preferences_token(token: str, max_age: int = PREFERENCES_MAX_AGE) -> str:
    data = _serializer().loads(token, max_age=max_age, salt="preferences")
    if not isinstance(data, dict) or "user_id" not in data:
        raise TypeError("Invalid token payload")
    return str(data["user_id"])
