import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer
from relaychat.settings import settings
from typing import Optional

# Signs bearer tokens for both the REST API and the websocket handshake
serializer = URLSafeTimedSerializer(settings.SESSION_SECRET_KEY, salt="access-token")

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")

def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed hash or a password over bcrypt's 72 byte limit
        return False

def create_access_token(user_id: int) -> str:
    return serializer.dumps({"sub": user_id})

def verify_access_token(token: str, max_age: Optional[int] = None) -> Optional[int]:
    if max_age is None:
        max_age = settings.ACCESS_TOKEN_MAX_AGE
    try:
        payload = serializer.loads(token, max_age=max_age)
    except BadSignature:
        return None
    user_id = payload.get("sub") if isinstance(payload, dict) else None
    return user_id if isinstance(user_id, int) else None
