import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import AuthenticationFailed


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: int, email: str, role: str) -> str:
    serializer = _serializer()
    return serializer.dumps({"id": user_id, "email": email, "role": role})


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=settings.token_ttl_hours * 3600)
    except SignatureExpired as exc:
        raise AuthenticationFailed("Token expired") from exc
    except BadSignature as exc:
        raise AuthenticationFailed("Invalid token") from exc

    if not isinstance(data, dict) or "id" not in data:
        raise AuthenticationFailed("Invalid token")
    return data
