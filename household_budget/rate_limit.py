from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


MAX_ATTEMPTS = 3
LOCKOUT_DURATION = timedelta(minutes=5)


def utc_now():
    return datetime.now(timezone.utc)


def _parse_timestamp(value):
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining_attempts: int
    lockout_ends_at: datetime = None

    def to_dict(self):
        return {
            "allowed": self.allowed,
            "remainingAttempts": self.remaining_attempts,
            "lockoutEndsAt": self.lockout_ends_at.isoformat() if self.lockout_ends_at else None,
        }


class MemoryAttemptStore:
    def __init__(self):
        self.records = {}

    def get(self, key):
        record = self.records.get(key)
        return dict(record) if record else None

    def upsert(self, key, record):
        self.records[key] = dict(record)

    def delete(self, key):
        self.records.pop(key, None)


class SqlAttemptStore:
    """Attempt records kept in the ``auth_attempts`` table.

    ``get_db`` is called for every operation so the store can be built once per
    app and still use the per-request connection.
    """

    def __init__(self, get_db):
        self.get_db = get_db

    def get(self, key):
        row = self.get_db().execute(
            """
            SELECT ip_address, attempt_count, last_attempt_at, lockout_until
            FROM auth_attempts
            WHERE ip_address = ?
            """,
            (key,),
        ).fetchone()
        if row is None:
            return None
        return {
            "attempt_count": row["attempt_count"],
            "last_attempt_at": _parse_timestamp(row["last_attempt_at"]),
            "lockout_until": _parse_timestamp(row["lockout_until"]),
        }

    def upsert(self, key, record):
        db = self.get_db()
        lockout_until = record.get("lockout_until")
        db.execute(
            """
            INSERT INTO auth_attempts (ip_address, attempt_count, last_attempt_at, lockout_until)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (ip_address) DO UPDATE SET
                attempt_count = excluded.attempt_count,
                last_attempt_at = excluded.last_attempt_at,
                lockout_until = excluded.lockout_until
            """,
            (
                key,
                record["attempt_count"],
                record["last_attempt_at"].isoformat(),
                lockout_until.isoformat() if lockout_until else None,
            ),
        )
        db.commit()

    def delete(self, key):
        db = self.get_db()
        db.execute("DELETE FROM auth_attempts WHERE ip_address = ?", (key,))
        db.commit()


class RateLimiter:
    def __init__(self, store, max_attempts=MAX_ATTEMPTS, lockout=LOCKOUT_DURATION, clock=utc_now):
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = lockout
        self.clock = clock

    def check_rate_limit(self, ip_address):
        record = self.store.get(ip_address)
        if record is None:
            return RateLimitResult(True, self.max_attempts)

        lockout_until = record.get("lockout_until")
        if lockout_until is not None:
            if self.clock() < lockout_until:
                return RateLimitResult(False, 0, lockout_until)
            self.store.delete(ip_address)
            return RateLimitResult(True, self.max_attempts)

        remaining = max(0, self.max_attempts - record["attempt_count"])
        return RateLimitResult(remaining > 0, remaining)

    def record_failed_attempt(self, ip_address):
        now = self.clock()
        record = self.store.get(ip_address)
        if record is None or (record.get("lockout_until") and record["lockout_until"] <= now):
            attempt_count = 1
        else:
            attempt_count = record["attempt_count"] + 1

        lockout_until = now + self.lockout if attempt_count >= self.max_attempts else None
        self.store.upsert(
            ip_address,
            {
                "attempt_count": attempt_count,
                "last_attempt_at": now,
                "lockout_until": lockout_until,
            },
        )
        if lockout_until is not None:
            return RateLimitResult(False, 0, lockout_until)
        return RateLimitResult(True, self.max_attempts - attempt_count)

    def clear_rate_limit(self, ip_address):
        self.store.delete(ip_address)
