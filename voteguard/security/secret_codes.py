# voteguard/security/secret_codes.py

import logging
from collections import namedtuple
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from voteguard import db
from voteguard.authentication.rbac import Permission, rbac
from voteguard.constants import AttemptOutcome
from voteguard.database.models import CodeAttempt, Election, SecretCode, SecretCodeUsage
from voteguard.errors import (
    AlreadyVotedError,
    ConflictError,
    DeactivatedError,
    InternalError,
    InvalidCodeError,
    LockedError,
    NotFoundError,
)
from voteguard.security.code_hashing import CodeHasher
from voteguard.security.lockout import LockoutPolicy
from voteguard.voting.locks import KeyedLocks

logger = logging.getLogger(__name__)

IssuedCode = namedtuple('IssuedCode', ['plaintext', 'record'])
ValidationResult = namedtuple('ValidationResult', ['ok', 'record'])


class SecretCodeManager:
    """
    Lifecycle of per-voter, per-election secret codes.

    Plaintext codes exist only in the return value of generate(); the database
    holds an argon2 hash of code + salt. Every validation attempt is committed
    as a CodeAttempt row (together with the attempt counter) before validate()
    returns or raises.
    """

    def __init__(self, eligibility, audit_logger, hasher=None, lockout=None, notifier=None, locks=None, clock=None):
        self.eligibility = eligibility
        self.audit_logger = audit_logger
        self.hasher = hasher or CodeHasher()
        self.lockout = lockout or LockoutPolicy()
        self.notifier = notifier
        self.locks = locks or KeyedLocks()
        self.clock = clock or datetime.utcnow

    def _now(self):
        return self.clock()

    def _find_current(self, voter_id, election_id):
        # The active code wins; otherwise the most recently issued one, so a
        # deactivated pair reports DEACTIVATED rather than NOT_FOUND.
        return (SecretCode.query
                .filter_by(voter_id=voter_id, election_id=election_id)
                .order_by(SecretCode.is_active.desc(), SecretCode.issued_at.desc())
                .first())

    def _get(self, code_id):
        record = db.session.get(SecretCode, code_id)
        if record is None:
            raise NotFoundError("Secret code not found", secret_code_id=code_id)
        return record

    def _commit(self, action):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error during {action}: {e}")
            raise InternalError(f"Could not persist {action}")

    def _record_attempt(self, record, voter_id, election_id, position_id, outcome, now):
        db.session.add(CodeAttempt(
            secret_code_id=record.id if record is not None else None,
            voter_id=voter_id,
            election_id=election_id,
            position_id=position_id,
            outcome=outcome.value,
            attempted_at=now,
        ))
        self._commit('code attempt')

    def generate(self, voter_id, election_id, issued_by):
        """
        Issue a new code for the voter and grant them access to the election.

        Returns:
            IssuedCode: the plaintext (shown once) and the persisted record.
        """
        rbac.require(issued_by, Permission.GENERATE_CODES)
        if db.session.get(Election, election_id) is None:
            raise NotFoundError("Election not found", election_id=election_id)
        if SecretCode.query.filter_by(voter_id=voter_id, election_id=election_id, is_active=True).first():
            raise ConflictError("An active secret code already exists for this voter",
                                voter_id=voter_id, election_id=election_id)

        now = self._now()
        plaintext = self.hasher.generate_code()
        salt = self.hasher.generate_salt()
        record = SecretCode(
            voter_id=voter_id,
            election_id=election_id,
            code_hash=self.hasher.hash_code(plaintext, salt),
            salt=salt,
            max_attempts=self.lockout.max_attempts,
            issued_by=issued_by.user_id,
            issued_at=now,
        )
        db.session.add(record)
        try:
            db.session.flush()
            self.eligibility.grant_access(voter_id, election_id, record.id, issued_by.user_id, commit=False)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("An active secret code already exists for this voter",
                                voter_id=voter_id, election_id=election_id)

        self.audit_logger.log_event('SECRET_CODE_GENERATED', {
            'secret_code_id': record.id,
            'voter_id': voter_id,
            'election_id': election_id,
        }, user_id=issued_by.user_id)
        logger.info(f"Secret code issued for voter {voter_id} in election {election_id}")

        if self.notifier is not None:
            self.notifier.deliver_code(voter_id, election_id, plaintext)
        return IssuedCode(plaintext, record)

    def validate(self, voter_id, election_id, position_id, input_code):
        """
        Check a voter's code for one position.

        Each attempt is counted on the code row before the hash is checked, so
        concurrent guesses from any number of workers share one limit.
        """
        with self.locks.hold((voter_id, election_id)):
            return self._validate(voter_id, election_id, position_id, input_code)

    def _validate(self, voter_id, election_id, position_id, input_code):
        now = self._now()
        details = {'voter_id': voter_id, 'election_id': election_id, 'position_id': position_id}
        record = self._find_current(voter_id, election_id)

        if record is None:
            self._record_attempt(None, voter_id, election_id, position_id, AttemptOutcome.NOT_FOUND, now)
            self.audit_logger.log_security_event('CODE_BRUTE_FORCE', dict(
                details, description='Attempted to use non-existent secret code'), user_id=voter_id)
            raise NotFoundError("Secret code not found")

        details['secret_code_id'] = record.id
        if not record.is_active:
            self._record_attempt(record, voter_id, election_id, position_id, AttemptOutcome.DEACTIVATED, now)
            self.audit_logger.log_security_event('CODE_BRUTE_FORCE', dict(
                details, description='Attempted to use deactivated secret code'), user_id=voter_id)
            raise DeactivatedError("Secret code is deactivated")

        reserved, locked = False, False
        if not self.lockout.is_locked(record, now):
            if record.is_locked and self.lockout.lift_expired(record.id, now):
                logger.info(f"Lockout expired for secret code {record.id}")
            reserved, locked = self.lockout.reserve_attempt(record.id, now)
            self._commit('code attempt counter')
            db.session.refresh(record)

        if not reserved:
            self._record_attempt(record, voter_id, election_id, position_id, AttemptOutcome.LOCKED, now)
            self.audit_logger.log_security_event('CODE_BRUTE_FORCE', dict(
                details, description='Attempted to use locked secret code'), user_id=voter_id, severity='MEDIUM')
            raise LockedError(retry_after=self.lockout.retry_after(record, now), locked_until=record.locked_until)

        if not self.hasher.verify_code(input_code, record.salt, record.code_hash):
            remaining = record.remaining_attempts
            self._record_attempt(record, voter_id, election_id, position_id, AttemptOutcome.INVALID_CODE, now)
            self.audit_logger.log_security_event('CODE_BRUTE_FORCE', dict(
                details, description='Failed secret code attempt', remaining_attempts=remaining),
                user_id=voter_id, severity='MEDIUM')
            if locked:
                self.audit_logger.log_security_event('SECRET_CODE_LOCKED', dict(
                    details, locked_until=(now + self.lockout.lockout_duration).isoformat()), user_id=voter_id)
            raise InvalidCodeError(remaining_attempts=remaining)

        rehashed = {}
        if self.hasher.needs_rehash(record.code_hash):
            rehashed['code_hash'] = self.hasher.hash_code(input_code.strip().upper(), record.salt)
            logger.info(f"Rehashing secret code {record.id} with current parameters")
        self.lockout.reset(record.id, now, **rehashed)

        if self.eligibility.has_voted(voter_id, election_id, position_id):
            self._record_attempt(record, voter_id, election_id, position_id, AttemptOutcome.ALREADY_VOTED, now)
            self.audit_logger.log_security_event('VOTE_MANIPULATION_ATTEMPT', dict(
                details, description='Attempted to vote twice for the same position'), user_id=voter_id)
            raise AlreadyVotedError("Already voted for this position", position_id=position_id)

        self._record_attempt(record, voter_id, election_id, position_id, AttemptOutcome.SUCCESS, now)
        self.audit_logger.log_event('SECRET_CODE_VALIDATED', details, user_id=voter_id)
        logger.info(f"Secret code validated for voter {voter_id} in election {election_id}")
        return ValidationResult(True, record)

    def matches(self, voter_id, election_id, input_code):
        """True when input_code is the voter's active, unlocked code. Counts and records nothing."""
        record = self._find_current(voter_id, election_id)
        if record is None or not record.is_active or self.lockout.is_locked(record, self._now()):
            return False
        return self.hasher.verify_code(input_code, record.salt, record.code_hash)

    def record_usage(self, record, position_id, candidate_id, now):
        # Joins the caller's transaction; VoteRecorder commits.
        db.session.add(SecretCodeUsage(secret_code_id=record.id, position_id=position_id,
                                       candidate_id=candidate_id, used_at=now))
        db.session.execute(
            update(SecretCode)
            .where(SecretCode.id == record.id)
            .values(total_uses=SecretCode.total_uses + 1, last_used_at=now)
            .execution_options(synchronize_session=False)
        )

    def deactivate(self, code_id, actor, reason):
        rbac.require(actor, Permission.MANAGE_CODES)
        record = self._get(code_id)
        if not record.is_active:
            raise ConflictError("Secret code is already deactivated", secret_code_id=code_id)
        record.is_active = False
        record.deactivated_at = self._now()
        record.deactivated_by = actor.user_id
        record.deactivation_reason = reason
        self._commit('code deactivation')

        self.audit_logger.log_event('SECRET_CODE_DEACTIVATED', {
            'secret_code_id': code_id,
            'voter_id': record.voter_id,
            'election_id': record.election_id,
            'reason': reason,
        }, user_id=actor.user_id)
        logger.info(f"Secret code {code_id} deactivated by {actor.user_id}")
        return record

    def reactivate(self, code_id, actor):
        rbac.require(actor, Permission.MANAGE_CODES)
        record = self._get(code_id)
        if record.is_active:
            raise ConflictError("Secret code is already active", secret_code_id=code_id)
        other = SecretCode.query.filter_by(voter_id=record.voter_id, election_id=record.election_id,
                                           is_active=True).first()
        if other is not None:
            raise ConflictError("Another active secret code exists for this voter", secret_code_id=other.id)

        record.is_active = True
        record.deactivated_at = None
        record.deactivated_by = None
        record.deactivation_reason = None
        record.attempts = 0
        record.is_locked = False
        record.locked_until = None
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("Another active secret code exists for this voter")

        self.audit_logger.log_event('SECRET_CODE_REACTIVATED', {
            'secret_code_id': code_id,
            'voter_id': record.voter_id,
            'election_id': record.election_id,
        }, user_id=actor.user_id)
        logger.info(f"Secret code {code_id} reactivated by {actor.user_id}")
        return record

    def statistics(self, election_id):
        now = self._now()
        codes = SecretCode.query.filter_by(election_id=election_id).all()
        total_uses = sum(c.total_uses or 0 for c in codes)
        return {
            'total_codes': len(codes),
            'active_codes': sum(1 for c in codes if c.is_active),
            'locked_codes': sum(1 for c in codes if self.lockout.is_locked(c, now)),
            'total_uses': total_uses,
            'avg_uses': round(total_uses / len(codes), 2) if codes else 0,
        }

    def find_suspicious(self, election_id, hours=24):
        """Codes with two or more failed attempts inside the window."""
        since = self._now() - timedelta(hours=hours)
        return (SecretCode.query
                .filter(SecretCode.election_id == election_id,
                        SecretCode.attempts >= 2,
                        SecretCode.last_attempt_at >= since)
                .all())

    def validate_format(self, code):
        return self.hasher.is_valid_format(code)

    def summary(self, record):
        return record.summary(self._now())
