from dataclasses import dataclass
from datetime import timedelta

from itsdangerous import BadData, URLSafeSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from .rate_limit import utc_now
from .validators import validate_pin


SESSION_COOKIE_NAME = "household_session"
SESSION_MAX_AGE = timedelta(days=30)
EXPIRING_SOON_THRESHOLD = timedelta(hours=24)
NO_SESSION_TO_REFRESH = "No active session to refresh"


class InvalidToken(Exception):
    pass


class TokenCodec:
    """Signs session payloads with itsdangerous.

    Expiry is carried in the payload itself so the manager can report the time
    remaining; the codec only guarantees the payload was not tampered with.
    """

    salt = "household-session"

    def __init__(self, secret):
        if not secret:
            raise ValueError("A session secret is required")
        self.serializer = URLSafeSerializer(secret, salt=self.salt)

    def encode(self, payload):
        return self.serializer.dumps(payload)

    def decode(self, token):
        try:
            return self.serializer.loads(token)
        except BadData:
            raise InvalidToken("Invalid session token") from None


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    token: str = None
    expires_in: int = None
    error: str = None


def _seconds(value):
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    return int(value)


class SessionManager:
    def __init__(self, secret, max_age=SESSION_MAX_AGE, clock=utc_now, codec=None):
        self.codec = codec or TokenCodec(secret)
        self.max_age = _seconds(max_age)
        self.clock = clock

    def _now(self):
        return int(self.clock().timestamp())

    def create_session(self, subject_id):
        issued_at = self._now()
        return self.codec.encode({"sub": subject_id, "iat": issued_at, "exp": issued_at + self.max_age})

    def verify(self, token):
        if not token or not isinstance(token, str):
            return None
        try:
            claims = self.codec.decode(token)
        except InvalidToken:
            return None
        if not isinstance(claims, dict) or not claims.get("sub"):
            return None
        expires_at = claims.get("exp")
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            return None
        if expires_at <= self._now():
            return None
        return claims

    def refresh_session(self, token):
        claims = self.verify(token)
        if claims is None:
            return RefreshResult(False, error=NO_SESSION_TO_REFRESH)
        return RefreshResult(True, token=self.create_session(claims["sub"]), expires_in=self.max_age)

    def get_session_time_remaining(self, token):
        claims = self.verify(token)
        if claims is None:
            return None
        return claims["exp"] - self._now()

    def is_session_expiring_soon(self, token):
        remaining = self.get_session_time_remaining(token)
        return remaining is not None and remaining < _seconds(EXPIRING_SOON_THRESHOLD)


def hash_pin(pin):
    return generate_password_hash(validate_pin(pin))


def verify_pin(pin_hash, pin):
    if not pin_hash or not isinstance(pin, str):
        return False
    return check_password_hash(pin_hash, pin)


def client_ip(headers, remote_addr=None):
    forwarded = (headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    cloudflare = (headers.get("CF-Connecting-IP") or "").strip()
    if cloudflare:
        return cloudflare
    return remote_addr or "unknown"
