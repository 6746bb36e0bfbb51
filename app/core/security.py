from __future__ import annotations

from itsdangerous import BadData, URLSafeTimedSerializer

from app.core.settings import settings


serializer = URLSafeTimedSerializer(settings.secret_key, salt="caltrack-session")


def sign_session(user_id: str) -> str:
    return serializer.dumps({"user_id": user_id})


def unsign_session(token: str) -> str | None:
    try:
        data = serializer.loads(token, max_age=settings.session_max_age_seconds)
    except BadData:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("user_id")


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
