# voteguard/elections/phases.py

import logging
from collections import namedtuple
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from voteguard import db
from voteguard.authentication.rbac import Permission, rbac
from voteguard.constants import ElectionPhase, ElectionStatus, PHASE_ORDER, TERMINAL_ELECTION_STATUSES
from voteguard.database.models import Election
from voteguard.errors import ConflictError, InternalError, NotFoundError, PhaseError, ValidationError

logger = logging.getLogger(__name__)

# Phase derivation is a pure function of the clock and the schedule. Nothing
# here runs as a persistence hook; callers refresh explicitly before saving.


def derive_phase(election, now):
    """
    Phase for the given instant. Unset deadlines are skipped. The window
    after every deadline has passed but before voting opens stays CAMPAIGN,
    so the result never moves backwards as time advances.
    """
    if election.registration_deadline and now < election.registration_deadline:
        return ElectionPhase.REGISTRATION.value
    if election.nomination_deadline and now < election.nomination_deadline:
        return ElectionPhase.NOMINATION.value
    if now < election.start_datetime:
        return ElectionPhase.CAMPAIGN.value
    if now <= election.end_datetime:
        return ElectionPhase.VOTING.value
    return ElectionPhase.RESULTS.value


def phase_index(phase):
    return PHASE_ORDER.index(ElectionPhase(phase))


def can_vote(election, now):
    return (election.status == ElectionStatus.ACTIVE.value
            and election.start_datetime <= now <= election.end_datetime
            and election.current_phase == ElectionPhase.VOTING.value)


def can_register_voters(election, now):
    return election.registration_deadline is None or now <= election.registration_deadline


def can_nominate_candidates(election, now):
    return election.nomination_deadline is None or now <= election.nomination_deadline


def is_in_campaign_period(election, now):
    return bool(election.campaign_start and election.campaign_end
                and election.campaign_start <= now <= election.campaign_end)


def validate_schedule(election):
    if election.start_datetime is None or election.end_datetime is None:
        raise ValidationError("Election needs a start and an end")
    if election.end_datetime <= election.start_datetime:
        raise ValidationError("End date must be after start date", field='end_datetime')
    for field in ('registration_deadline', 'nomination_deadline', 'campaign_start'):
        value = getattr(election, field)
        if value is not None and value >= election.start_datetime:
            raise ValidationError(f"{field} must be before voting starts", field=field)
    if election.campaign_end is not None:
        if election.campaign_end > election.start_datetime:
            raise ValidationError("Campaign must end by the time voting starts", field='campaign_end')
        if election.campaign_start is not None and election.campaign_end <= election.campaign_start:
            raise ValidationError("Campaign end must be after campaign start", field='campaign_end')


class PhaseGate(namedtuple('PhaseGate', ['election_id', 'status', 'phase', 'voting_open', 'checked_at'])):
    """Voting decision captured once at the start of a vote transaction."""
    __slots__ = ()

    def require_voting_open(self):
        if not self.voting_open:
            raise PhaseError("Voting is not open for this election",
                             current_phase=self.phase, status=self.status)
        return self


PhaseChange = namedtuple('PhaseChange', ['election_id', 'previous_phase', 'phase', 'previous_status', 'status'])


class ElectionPhaseEngine:
    def __init__(self, audit_logger=None, eligibility=None, clock=None):
        self.audit_logger = audit_logger
        self.eligibility = eligibility
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

    def _get(self, election_id):
        election = db.session.get(Election, election_id)
        if election is None:
            raise NotFoundError("Election not found", election_id=election_id)
        return election

    def refresh(self, election, now=None):
        """
        Recompute phase (and SCHEDULED -> ACTIVE once voting opens) in memory.

        Returns:
            PhaseChange or None when nothing changed. Terminal statuses are left alone.
        """
        if election.is_terminal:
            return None
        now = now or self._now()
        previous_phase, previous_status = election.current_phase, election.status
        phase = derive_phase(election, now)
        if previous_phase and phase_index(phase) < phase_index(previous_phase):
            # Schedule moved under a stored phase; never step backwards.
            phase = previous_phase
        election.current_phase = phase
        if election.status == ElectionStatus.SCHEDULED.value and phase == ElectionPhase.VOTING.value:
            election.status = ElectionStatus.ACTIVE.value
            election.status_changed_by = 'system'
            election.status_reason = 'Voting period opened'
        if (phase, election.status) == (previous_phase, previous_status):
            return None
        return PhaseChange(election.id, previous_phase, phase, previous_status, election.status)

    def _persist_change(self, election, change):
        self._commit('phase change')
        logger.info(f"Election {election.id} moved {change.previous_phase}/{change.previous_status} "
                    f"-> {change.phase}/{change.status}")
        self._audit('ELECTION_PHASE_CHANGED', change._asdict())

    def load(self, election_id):
        """Fetch an election with its phase brought up to date."""
        election = self._get(election_id)
        change = self.refresh(election)
        if change is not None:
            self._persist_change(election, change)
        return election

    def save(self, election):
        validate_schedule(election)
        self.refresh(election)
        db.session.add(election)
        self._commit('election')
        return election

    def gate(self, election_id, now=None):
        now = now or self._now()
        election = self._get(election_id)
        change = self.refresh(election, now)
        if change is not None:
            self._persist_change(election, change)
        return PhaseGate(election.id, election.status, election.current_phase, can_vote(election, now), now)

    def _transition(self, election_id, actor, permission, allowed_from, status, reason=None, phase=None):
        rbac.require(actor, permission)
        election = self._get(election_id)
        if election.status not in allowed_from:
            raise ConflictError(f"Cannot move election from {election.status} to {status}",
                                status=election.status)
        previous = election.status
        election.status = status
        election.status_changed_by = actor.user_id
        election.status_reason = reason
        if phase is not None:
            election.current_phase = phase
        else:
            self.refresh(election)
        self._commit('election status')
        self._audit('ELECTION_STATUS_CHANGED', {'election_id': election_id, 'previous_status': previous,
                                                'status': status, 'reason': reason}, user_id=actor.user_id)
        logger.info(f"Election {election_id} {previous} -> {status} by {actor.user_id}")
        return election

    def schedule(self, election_id, actor):
        election = self._get(election_id)
        validate_schedule(election)
        return self._transition(election_id, actor, Permission.MANAGE_ELECTIONS,
                                {ElectionStatus.DRAFT.value}, ElectionStatus.SCHEDULED.value)

    def activate(self, election_id, actor, reason=None):
        election = self._get(election_id)
        validate_schedule(election)
        return self._transition(election_id, actor, Permission.MANAGE_ELECTIONS,
                                {ElectionStatus.DRAFT.value, ElectionStatus.SCHEDULED.value},
                                ElectionStatus.ACTIVE.value, reason)

    def complete(self, election_id, actor, reason=None):
        election = self._transition(election_id, actor, Permission.OVERRIDE_PHASE,
                                    {ElectionStatus.DRAFT.value, ElectionStatus.SCHEDULED.value,
                                     ElectionStatus.ACTIVE.value},
                                    ElectionStatus.COMPLETED.value, reason, phase=ElectionPhase.COMPLETED.value)
        if self.eligibility is not None:
            self.eligibility.expire_for_election(election_id)
        return election

    def cancel(self, election_id, actor, reason):
        return self._transition(election_id, actor, Permission.OVERRIDE_PHASE,
                                {ElectionStatus.DRAFT.value, ElectionStatus.SCHEDULED.value,
                                 ElectionStatus.ACTIVE.value},
                                ElectionStatus.CANCELLED.value, reason)

    def freeze(self, election_id, actor, reason):
        return self._transition(election_id, actor, Permission.OVERRIDE_PHASE,
                                {ElectionStatus.DRAFT.value, ElectionStatus.SCHEDULED.value,
                                 ElectionStatus.ACTIVE.value},
                                ElectionStatus.FROZEN.value, reason)

    def status_report(self, election_id):
        now = self._now()
        election = self.load(election_id)
        return {
            'election_id': election.id,
            'status': election.status,
            'phase': election.current_phase,
            'can_vote': can_vote(election, now),
            'can_register': can_register_voters(election, now),
            'can_nominate': can_nominate_candidates(election, now),
            'in_campaign_period': is_in_campaign_period(election, now),
            'checked_at': now.isoformat(),
        }

    def sweep(self, now=None):
        """Refresh every non-terminal election. Returns the PhaseChanges applied."""
        now = now or self._now()
        changes = []
        open_statuses = [s.value for s in ElectionStatus if s.value not in TERMINAL_ELECTION_STATUSES]
        for election in Election.query.filter(Election.status.in_(open_statuses)).all():
            change = self.refresh(election, now)
            if change is not None:
                changes.append(change)
        if changes:
            self._commit('phase sweep')
            for change in changes:
                logger.info(f"Sweep moved election {change.election_id} to {change.phase}/{change.status}")
                self._audit('ELECTION_PHASE_CHANGED', change._asdict())
        return changes
