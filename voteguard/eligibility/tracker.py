# voteguard/eligibility/tracker.py

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from voteguard import db
from voteguard.authentication.rbac import Permission, rbac
from voteguard.constants import AccessStatus
from voteguard.database.models import EligibilityAccess, EligiblePosition, Position, VotedPosition
from voteguard.errors import AlreadyVotedError, ConflictError, InternalError, NotEligibleError, NotFoundError

logger = logging.getLogger(__name__)


def compute_progress(total_voted, total_eligible):
    """Whole-number percentage of eligible positions voted, rounded half up."""
    if total_eligible <= 0:
        return 0
    return (200 * total_voted + total_eligible) // (2 * total_eligible)


def refresh_totals(access):
    access.total_eligible = len(access.eligible_positions)
    access.total_voted = len(access.voted_positions)
    access.progress = compute_progress(access.total_voted, access.total_eligible)


class EligibilityTracker:
    """Which positions a voter may vote on in an election, and which they already have."""

    def __init__(self, audit_logger=None, clock=None):
        self.audit_logger = audit_logger
        self.clock = clock or datetime.utcnow

    def _now(self):
        return self.clock()

    def _audit(self, event_type, data, user_id=None):
        if self.audit_logger is not None:
            self.audit_logger.log_event(event_type, data, user_id=user_id)

    def _commit(self, action):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error during {action}: {e}")
            raise InternalError(f"Could not persist {action}")

    def get_access(self, voter_id, election_id):
        return EligibilityAccess.query.filter_by(voter_id=voter_id, election_id=election_id).first()

    def require_access(self, voter_id, election_id):
        access = self.get_access(voter_id, election_id)
        if access is None:
            raise NotFoundError("Voter has no access to this election", voter_id=voter_id, election_id=election_id)
        return access

    def grant_access(self, voter_id, election_id, secret_code_id, granted_by, commit=True):
        access = self.get_access(voter_id, election_id)
        if access is None:
            access = EligibilityAccess(voter_id=voter_id, election_id=election_id, secret_code_id=secret_code_id,
                                       granted_by=granted_by, granted_at=self._now(),
                                       status=AccessStatus.ACTIVE.value)
            db.session.add(access)
            logger.info(f"Access granted to voter {voter_id} for election {election_id}")
        else:
            access.secret_code_id = secret_code_id
        if commit:
            self._commit('access grant')
        return access

    def grant_eligibility(self, voter_id, election_id, position_id, reason, verified_by):
        """Add a position to the voter's eligible set. Re-adding a position is a no-op."""
        rbac.require(verified_by, Permission.MANAGE_ELIGIBILITY)
        access = self.require_access(voter_id, election_id)
        position = db.session.get(Position, position_id)
        if position is None or position.election_id != election_id:
            raise NotFoundError("Position not found in this election", position_id=position_id)
        if position_id in access.eligible_ids:
            return access

        access.eligible_positions.append(EligiblePosition(
            position_id=position_id, reason=reason,
            verified_by=verified_by.user_id, verified_at=self._now()))
        refresh_totals(access)
        self._commit('eligibility grant')
        self._audit('ELIGIBILITY_GRANTED', {'voter_id': voter_id, 'election_id': election_id,
                                            'position_id': position_id, 'reason': reason},
                    user_id=verified_by.user_id)
        return access

    def remove_eligibility(self, voter_id, election_id, position_id, actor):
        rbac.require(actor, Permission.MANAGE_ELIGIBILITY)
        access = self.require_access(voter_id, election_id)
        if position_id in access.voted_ids:
            raise ConflictError("Cannot remove eligibility for a position already voted", position_id=position_id)
        entry = next((p for p in access.eligible_positions if p.position_id == position_id), None)
        if entry is None:
            return access
        access.eligible_positions.remove(entry)
        refresh_totals(access)
        self._commit('eligibility removal')
        self._audit('ELIGIBILITY_REMOVED', {'voter_id': voter_id, 'election_id': election_id,
                                            'position_id': position_id}, user_id=actor.user_id)
        return access

    def can_vote(self, voter_id, election_id, position_id):
        access = self.get_access(voter_id, election_id)
        if access is None or access.status != AccessStatus.ACTIVE.value:
            return False
        return position_id in access.eligible_ids and position_id not in access.voted_ids

    def has_voted(self, voter_id, election_id, position_id):
        access = self.get_access(voter_id, election_id)
        return access is not None and position_id in access.voted_ids

    def ensure_can_vote(self, voter_id, election_id, position_id):
        """Raise the specific refusal behind can_vote() == False."""
        access = self.get_access(voter_id, election_id)
        if access is None:
            raise NotEligibleError("Voter has no access to this election")
        if access.status != AccessStatus.ACTIVE.value:
            raise NotEligibleError(f"Voter access is {access.status}", status=access.status)
        if position_id in access.voted_ids:
            raise AlreadyVotedError("Already voted for this position", position_id=position_id)
        if position_id not in access.eligible_ids:
            raise NotEligibleError("Voter is not eligible for this position", position_id=position_id)
        return access

    def record_vote(self, voter_id, election_id, position_id, candidate_id, vote_id, now=None, commit=True):
        """
        Mark a position as voted.

        A position that is already recorded returns the access unchanged, so a
        retried call never double counts. VoteRecorder passes commit=False to
        keep this inside its vote transaction.
        """
        access = self.require_access(voter_id, election_id)
        if access.voted_entry(position_id) is not None:
            return access
        if position_id not in access.eligible_ids:
            raise NotEligibleError("Voter is not eligible for this position", position_id=position_id)

        now = now or self._now()
        access.voted_positions.append(VotedPosition(
            position_id=position_id, candidate_id=candidate_id, vote_id=vote_id, voted_at=now))
        access.last_vote_at = now
        refresh_totals(access)
        if commit:
            self._commit('vote progress')
        return access

    def suspend(self, voter_id, election_id, actor, reason):
        rbac.require(actor, Permission.MANAGE_ELIGIBILITY)
        access = self.require_access(voter_id, election_id)
        if access.status != AccessStatus.ACTIVE.value:
            raise ConflictError(f"Cannot suspend access in status {access.status}", status=access.status)
        access.status = AccessStatus.SUSPENDED.value
        access.suspended_at = self._now()
        access.suspended_by = actor.user_id
        access.suspension_reason = reason
        self._commit('access suspension')
        self._audit('ACCESS_SUSPENDED', {'voter_id': voter_id, 'election_id': election_id, 'reason': reason},
                    user_id=actor.user_id)
        return access

    def reactivate(self, voter_id, election_id, actor):
        rbac.require(actor, Permission.MANAGE_ELIGIBILITY)
        access = self.require_access(voter_id, election_id)
        # Only a suspension is reversible
        if access.status != AccessStatus.SUSPENDED.value:
            raise ConflictError(f"Cannot reactivate access in status {access.status}", status=access.status)
        access.status = AccessStatus.ACTIVE.value
        access.suspended_at = None
        access.suspended_by = None
        access.suspension_reason = None
        self._commit('access reactivation')
        self._audit('ACCESS_REACTIVATED', {'voter_id': voter_id, 'election_id': election_id},
                    user_id=actor.user_id)
        return access

    def revoke(self, voter_id, election_id, actor, reason):
        rbac.require(actor, Permission.MANAGE_ELIGIBILITY)
        access = self.require_access(voter_id, election_id)
        if access.status not in (AccessStatus.ACTIVE.value, AccessStatus.SUSPENDED.value):
            raise ConflictError(f"Cannot revoke access in status {access.status}", status=access.status)
        access.status = AccessStatus.REVOKED.value
        access.revoked_at = self._now()
        access.revoked_by = actor.user_id
        access.revocation_reason = reason
        self._commit('access revocation')
        self._audit('ACCESS_REVOKED', {'voter_id': voter_id, 'election_id': election_id, 'reason': reason},
                    user_id=actor.user_id)
        return access

    def expire_for_election(self, election_id, commit=True):
        """Close every open access row once the election is over. Returns the count."""
        now = self._now()
        rows = (EligibilityAccess.query
                .filter(EligibilityAccess.election_id == election_id,
                        EligibilityAccess.status.in_([AccessStatus.ACTIVE.value, AccessStatus.SUSPENDED.value]))
                .all())
        for access in rows:
            access.status = AccessStatus.EXPIRED.value
            access.expired_at = now
        if commit:
            self._commit('access expiry')
        if rows:
            logger.info(f"Expired {len(rows)} access rows for election {election_id}")
        return len(rows)

    def statistics(self, election_id):
        rows = EligibilityAccess.query.filter_by(election_id=election_id).all()
        by_status = {status.value: 0 for status in AccessStatus}
        for access in rows:
            by_status[access.status] = by_status.get(access.status, 0) + 1
        return {
            'total_access': len(rows),
            'active_access': by_status[AccessStatus.ACTIVE.value],
            'suspended_access': by_status[AccessStatus.SUSPENDED.value],
            'revoked_access': by_status[AccessStatus.REVOKED.value],
            'expired_access': by_status[AccessStatus.EXPIRED.value],
            'total_votes_cast': sum(a.total_voted for a in rows),
            'avg_progress': round(sum(a.progress for a in rows) / len(rows), 2) if rows else 0,
        }

    def summary(self, access):
        return {
            'id': access.id,
            'voter_id': access.voter_id,
            'election_id': access.election_id,
            'status': access.status,
            'total_eligible': access.total_eligible,
            'total_voted': access.total_voted,
            'progress': access.progress,
            'is_complete': access.is_complete,
            'remaining_positions': access.remaining_positions,
            'eligible_positions': sorted(access.eligible_ids),
            'voted_positions': sorted(access.voted_ids),
            'last_vote_at': access.last_vote_at.isoformat() if access.last_vote_at else None,
        }
