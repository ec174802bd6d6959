import secrets

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.state_secret, salt="oauth-state")


def generate_state_token() -> str:
    return _serializer().dumps({"n": secrets.token_urlsafe(16)})


def validate_state_token(token: str, max_age_secs: int = 600) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except BadSignature:
        return False
    return bool(isinstance(data, dict) and data.get("n"))
