from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


CSRF_HEADER = "X-CSRF-Token"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="budget-csrf")


def generate_csrf_token(household_id: Optional[int] = None) -> str:
    return _serializer().dumps({"h": household_id})


def validate_csrf_token(
    token: Optional[str],
    household_id: Optional[int] = None,
    max_age_hours: int = 2,
) -> bool:
    """Check signature and age; a token bound to a household only works there."""
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False

    bound = data.get("h") if isinstance(data, dict) else None
    if bound is not None and bound != household_id:
        return False
    return True
