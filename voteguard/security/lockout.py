# voteguard/security/lockout.py

from datetime import timedelta

from sqlalchemy import update

from voteguard import db
from voteguard.database.models import SecretCode

# Brute-force lockout for secret codes.
# State lives on the persisted SecretCode row, so a lock survives restarts.
# The window is fixed: locked_until = moment of lock + lockout duration.
# Counter changes are single UPDATE statements guarded by their WHERE clause,
# so concurrent workers cannot read the same count and write back the same value.


class LockoutPolicy:
    def __init__(self, max_attempts=3, lockout_minutes=15):
        """
        max_attempts: consecutive failures that trigger a lock
        lockout_minutes: fixed wall-clock length of a lock
        """
        self.max_attempts = max_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)

    def is_locked(self, record, now):
        return bool(record.is_locked and record.locked_until and now < record.locked_until)

    def retry_after(self, record, now):
        """Seconds until the lock lifts (0 when not locked)."""
        if not self.is_locked(record, now):
            return 0
        remaining = (record.locked_until - now).total_seconds()
        return max(1, int(remaining + 0.999))

    def _execute(self, stmt):
        return db.session.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def lift_expired(self, code_id, now):
        """Lift a lock whose window has passed. Joins the caller's transaction; returns True when a lock was lifted."""
        return self._execute(
            update(SecretCode)
            .where(SecretCode.id == code_id,
                   SecretCode.is_locked.is_(True),
                   SecretCode.locked_until <= now)
            .values(is_locked=False, locked_until=None, attempts=0)
        ) > 0

    def reserve_attempt(self, code_id, now):
        """
        Count one attempt before the code is checked.

        The increment only applies while the code is unlocked and below its
        limit; the attempt that reaches the limit also sets the lock. Joins
        the caller's transaction.

        Returns:
            tuple: (reserved, locked). reserved is False when the code was
            already locked and nothing was counted; locked is True when this
            attempt used up the last one.
        """
        reserved = self._execute(
            update(SecretCode)
            .where(SecretCode.id == code_id,
                   SecretCode.is_locked.is_(False),
                   SecretCode.attempts < SecretCode.max_attempts)
            .values(attempts=SecretCode.attempts + 1, last_attempt_at=now)
        ) > 0
        if not reserved:
            return False, False
        locked = self._execute(
            update(SecretCode)
            .where(SecretCode.id == code_id,
                   SecretCode.attempts >= SecretCode.max_attempts)
            .values(is_locked=True, locked_until=now + self.lockout_duration)
        ) > 0
        return True, locked

    def reset(self, code_id, now, **values):
        """Clear the counter and any lock after a correct code; extra column values ride along."""
        self._execute(
            update(SecretCode)
            .where(SecretCode.id == code_id)
            .values(attempts=0, is_locked=False, locked_until=None, last_attempt_at=now, **values)
        )
