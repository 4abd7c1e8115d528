# voteguard/voting/recorder.py

import logging
from collections import namedtuple
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from voteguard import db
from voteguard.authentication.rbac import Permission, rbac
from voteguard.constants import COUNTABLE_VOTE_STATUSES, VoteStatus
from voteguard.database.models import Candidate, EligibilityAccess, Vote, new_id
from voteguard.errors import (
    AlreadyVotedError,
    ConflictError,
    IntegrityViolationError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from voteguard.security.input_validator import InputValidator
from voteguard.voting.locks import KeyedLocks
from voteguard.voting.receipts import chain_tip, compute_vote_hash, generate_salt, receipt_from_hash

logger = logging.getLogger(__name__)


class VoteReceipt(namedtuple('VoteReceipt', ['vote_id', 'receipt_hash', 'timestamp'])):
    __slots__ = ()

    def to_dict(self):
        return {'vote_id': self.vote_id, 'receipt_hash': self.receipt_hash, 'timestamp': self.timestamp.isoformat()}


def receipt_for(vote):
    return VoteReceipt(vote.id, vote.receipt_hash, vote.timestamp)


class VoteRecorder:
    """
    Records one ballot per voter and position.

    The phase gate is evaluated once, before anything else, and its decision
    holds for the rest of the submission. Code validation, eligibility checks
    and the insert then run under a per-(voter, election) lock shared with
    SecretCodeManager. Across processes the vote transaction first updates the
    voter's access row, which holds off any other transaction for the same
    voter until it ends; the votes unique constraint backs that up.
    """

    def __init__(self, phase_engine, codes, eligibility, signer, result_engine=None,
                 audit_logger=None, notifier=None, locks=None, validator=None, clock=None):
        self.phase_engine = phase_engine
        self.codes = codes
        self.eligibility = eligibility
        self.signer = signer
        self.result_engine = result_engine
        self.audit_logger = audit_logger
        self.notifier = notifier
        self.locks = locks or KeyedLocks()
        self.validator = validator or InputValidator()
        self.clock = clock or datetime.utcnow

    def _now(self):
        return self.clock()

    def _check_candidate(self, position_id, candidate_id):
        if candidate_id is None:
            return
        candidate = db.session.get(Candidate, candidate_id)
        if candidate is None or candidate.position_id != position_id:
            raise ValidationError("Candidate is not standing for this position", field='candidate_id')

    def _matching_vote(self, voter_id, election_id, position_id, candidate_id, is_abstention):
        vote = Vote.query.filter_by(election_id=election_id, voter_id=voter_id, position_id=position_id).first()
        if vote is None or vote.is_abstention != is_abstention or vote.candidate_id != candidate_id:
            return None
        return vote

    def submit_vote(self, voter_id, election_id, position_id, candidate_id, secret_code,
                    is_abstention=False, abstention_reason=None):
        candidate_id, abstention_reason = self.validator.validate_ballot(candidate_id, is_abstention,
                                                                         abstention_reason)
        gate = self.phase_engine.gate(election_id).require_voting_open()
        self._check_candidate(position_id, candidate_id)

        with self.locks.hold((voter_id, election_id)):
            existing = self._replayed_vote(voter_id, election_id, position_id, candidate_id,
                                           is_abstention, secret_code)
            if existing is not None:
                return receipt_for(existing)
            try:
                result = self.codes.validate(voter_id, election_id, position_id, secret_code)
                vote = self._persist(gate, result.record, voter_id, election_id, position_id,
                                     candidate_id, is_abstention, abstention_reason)
            except AlreadyVotedError:
                existing = self._matching_vote(voter_id, election_id, position_id, candidate_id, is_abstention)
                if existing is None:
                    raise
                logger.info(f"Concurrent repeat of vote {existing.id}; returning original receipt")
                return receipt_for(existing)

        receipt = receipt_for(vote)
        self._after_commit(vote, receipt)
        return receipt

    def _replayed_vote(self, voter_id, election_id, position_id, candidate_id, is_abstention, secret_code):
        """The stored vote when this exact ballot was already recorded under the same code."""
        existing = self._matching_vote(voter_id, election_id, position_id, candidate_id, is_abstention)
        if existing is None or not self.codes.matches(voter_id, election_id, secret_code):
            return None
        logger.info(f"Idempotent replay of vote {existing.id}; returning original receipt")
        if self.audit_logger is not None:
            self.audit_logger.log_event('VOTE_REPLAYED', {
                'vote_id': existing.id,
                'election_id': election_id,
                'position_id': position_id,
            }, user_id=voter_id)
        return existing

    def _claim_voter(self, voter_id, election_id, now):
        # Write to the voter's access row first; a second transaction for the
        # same voter blocks here until this one ends, then reads fresh state.
        db.session.execute(
            update(EligibilityAccess)
            .where(EligibilityAccess.voter_id == voter_id, EligibilityAccess.election_id == election_id)
            .values(last_vote_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.expire_all()

    def _persist(self, gate, code_record, voter_id, election_id, position_id, candidate_id,
                 is_abstention, abstention_reason):
        now = self._now()
        try:
            self._claim_voter(voter_id, election_id, now)
            self.eligibility.ensure_can_vote(voter_id, election_id, position_id)

            salt = generate_salt()
            vote_hash = compute_vote_hash(voter_id, position_id, candidate_id, now, salt)
            previous_hash = chain_tip(Vote.query.filter_by(election_id=election_id, voter_id=voter_id).all())
            vote = Vote(
                id=new_id(),
                election_id=election_id,
                position_id=position_id,
                candidate_id=candidate_id,
                voter_id=voter_id,
                is_abstention=is_abstention,
                abstention_reason=abstention_reason,
                status=VoteStatus.CAST.value,
                vote_hash=vote_hash,
                receipt_hash=receipt_from_hash(vote_hash),
                salt=salt,
                signature=self.signer.sign(vote_hash, previous_hash),
                previous_hash=previous_hash,
                timestamp=now,
                election_phase=gate.phase,
            )
            db.session.add(vote)
            self.eligibility.record_vote(voter_id, election_id, position_id, candidate_id, vote.id,
                                         now=now, commit=False)
            self.codes.record_usage(code_record, position_id, candidate_id, now)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.warning(f"Concurrent vote detected for voter {voter_id} position {position_id}")
            raise AlreadyVotedError("Already voted for this position", position_id=position_id)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error recording vote: {e}")
            raise InternalError("Could not record vote")
        except Exception:
            db.session.rollback()
            raise
        return vote

    def _after_commit(self, vote, receipt):
        # The vote is durable at this point; nothing below may undo it.
        if self.audit_logger is not None:
            self.audit_logger.log_event('VOTE_CAST', {
                'vote_id': vote.id,
                'election_id': vote.election_id,
                'position_id': vote.position_id,
                'receipt_hash': vote.receipt_hash,
                'is_abstention': vote.is_abstention,
            }, user_id=vote.voter_id)
        logger.info(f"Vote {vote.id} recorded for election {vote.election_id}")
        if self.result_engine is not None:
            self.result_engine.invalidate(vote.election_id)
        if self.notifier is not None:
            self.notifier.deliver_receipt(vote.voter_id, vote.election_id, receipt.to_dict())

    def _get(self, vote_id):
        vote = db.session.get(Vote, vote_id)
        if vote is None:
            raise NotFoundError("Vote not found", vote_id=vote_id)
        return vote

    def _set_status(self, vote, status, actor, reason=None):
        previous = vote.status
        vote.status = status
        vote.status_changed_at = self._now()
        vote.status_changed_by = actor.user_id
        vote.status_reason = reason
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error updating vote {vote.id}: {e}")
            raise InternalError("Could not update vote status")
        if self.audit_logger is not None:
            self.audit_logger.log_event('VOTE_STATUS_CHANGED', {
                'vote_id': vote.id, 'election_id': vote.election_id,
                'previous_status': previous, 'status': status, 'reason': reason,
            }, user_id=actor.user_id)
        if self.result_engine is not None:
            self.result_engine.invalidate(vote.election_id)
        return vote

    def verify_vote(self, vote_id, actor):
        """Check a vote's hash, receipt and signature; CAST votes move to VERIFIED."""
        rbac.require(actor, Permission.MANAGE_VOTES)
        vote = self._get(vote_id)
        failures = self.signer.check_vote(vote)
        if failures:
            self._set_status(vote, VoteStatus.DISPUTED.value, actor,
                             f"Integrity check failed: {', '.join(failures)}")
            if self.audit_logger is not None:
                self.audit_logger.log_security_event('VOTE_INTEGRITY_FAILURE', {
                    'vote_id': vote.id, 'election_id': vote.election_id, 'failed_checks': failures,
                }, user_id=actor.user_id, severity='CRITICAL')
            raise IntegrityViolationError("Vote failed integrity checks", vote_id=vote_id, failed_checks=failures)
        if vote.status == VoteStatus.CAST.value:
            self._set_status(vote, VoteStatus.VERIFIED.value, actor)
        return vote

    def invalidate_vote(self, vote_id, actor, reason):
        rbac.require(actor, Permission.MANAGE_VOTES)
        vote = self._get(vote_id)
        if vote.status == VoteStatus.INVALID.value:
            raise ConflictError("Vote is already invalid", vote_id=vote_id)
        return self._set_status(vote, VoteStatus.INVALID.value, actor, reason)

    def dispute_vote(self, vote_id, actor, reason):
        rbac.require(actor, Permission.MANAGE_VOTES)
        vote = self._get(vote_id)
        if vote.status not in COUNTABLE_VOTE_STATUSES:
            raise ConflictError(f"Cannot dispute a vote in status {vote.status}", vote_id=vote_id)
        return self._set_status(vote, VoteStatus.DISPUTED.value, actor, reason)

    def find_by_receipt(self, receipt_hash):
        if not isinstance(receipt_hash, str) or not receipt_hash.strip():
            raise ValidationError("Receipt hash is required", field='receipt_hash')
        vote = Vote.query.filter_by(receipt_hash=receipt_hash.strip().upper()).first()
        if vote is None:
            raise NotFoundError("No vote matches this receipt")
        return vote
