# tests/test_phases.py
from datetime import datetime, timedelta

import pytest

from voteguard import db
from voteguard.constants import AccessStatus, ElectionPhase, ElectionStatus
from voteguard.database.models import Election
from voteguard.elections.phases import (
    can_nominate_candidates,
    can_register_voters,
    can_vote,
    derive_phase,
    is_in_campaign_period,
    validate_schedule,
)
from voteguard.errors import ConflictError, PermissionDeniedError, PhaseError, ValidationError

T0 = datetime(2026, 3, 2, 12, 0, 0)


def scheduled_election(**overrides):
    fields = dict(
        id='election-1',
        title='Board',
        status=ElectionStatus.SCHEDULED.value,
        current_phase=ElectionPhase.REGISTRATION.value,
        registration_deadline=T0 + timedelta(days=1),
        nomination_deadline=T0 + timedelta(days=2),
        campaign_start=T0 + timedelta(days=2),
        campaign_end=T0 + timedelta(days=3),
        start_datetime=T0 + timedelta(days=3),
        end_datetime=T0 + timedelta(days=4),
    )
    fields.update(overrides)
    return Election(**fields)


def test_derive_phase_follows_schedule():
    election = scheduled_election()
    assert derive_phase(election, T0) == 'REGISTRATION'
    assert derive_phase(election, T0 + timedelta(days=1, hours=1)) == 'NOMINATION'
    assert derive_phase(election, T0 + timedelta(days=2, hours=1)) == 'CAMPAIGN'
    assert derive_phase(election, T0 + timedelta(days=3)) == 'VOTING'
    assert derive_phase(election, T0 + timedelta(days=4)) == 'VOTING'
    assert derive_phase(election, T0 + timedelta(days=4, seconds=1)) == 'RESULTS'


def test_derive_phase_skips_missing_deadlines():
    election = scheduled_election(registration_deadline=None, nomination_deadline=None)
    assert derive_phase(election, T0) == 'CAMPAIGN'


def test_derive_phase_never_moves_backwards():
    election = scheduled_election()
    order = ['REGISTRATION', 'NOMINATION', 'CAMPAIGN', 'VOTING', 'RESULTS']
    seen = []
    instant = T0
    while instant < T0 + timedelta(days=5):
        seen.append(order.index(derive_phase(election, instant)))
        instant += timedelta(hours=3)
    assert seen == sorted(seen)


def test_window_predicates():
    election = scheduled_election()
    assert can_register_voters(election, T0)
    assert not can_register_voters(election, T0 + timedelta(days=1, seconds=1))
    assert can_nominate_candidates(election, T0 + timedelta(days=1, hours=12))
    assert is_in_campaign_period(election, T0 + timedelta(days=2, hours=12))
    assert not is_in_campaign_period(election, T0)


def test_can_vote_needs_active_status_and_window():
    election = scheduled_election(status=ElectionStatus.ACTIVE.value, current_phase=ElectionPhase.VOTING.value)
    assert can_vote(election, T0 + timedelta(days=3, hours=1))
    assert not can_vote(election, T0 + timedelta(days=4, hours=1))

    election.status = ElectionStatus.FROZEN.value
    assert not can_vote(election, T0 + timedelta(days=3, hours=1))


def test_validate_schedule():
    validate_schedule(scheduled_election())
    with pytest.raises(ValidationError):
        validate_schedule(scheduled_election(end_datetime=T0 + timedelta(days=3)))
    with pytest.raises(ValidationError):
        validate_schedule(scheduled_election(registration_deadline=T0 + timedelta(days=3, hours=1)))
    with pytest.raises(ValidationError):
        validate_schedule(scheduled_election(campaign_end=T0 + timedelta(days=1, hours=12)))


def test_refresh_does_not_step_back(services):
    election = scheduled_election(current_phase=ElectionPhase.CAMPAIGN.value)
    # Schedule moved so the clock now falls in registration again
    assert services.phases.refresh(election, T0) is None
    assert election.current_phase == 'CAMPAIGN'


def test_refresh_ignores_terminal(services):
    election = scheduled_election(status=ElectionStatus.CANCELLED.value)
    assert services.phases.refresh(election, T0 + timedelta(days=3, hours=1)) is None
    assert election.current_phase == 'REGISTRATION'


def test_scheduled_becomes_active_when_voting_opens(services, db_session, clock):
    db.session.add(scheduled_election(id='election-1'))
    db.session.commit()

    clock.now = T0 + timedelta(days=3, hours=1)
    gate = services.phases.gate('election-1')
    assert gate.voting_open is True
    assert gate.status == 'ACTIVE'
    assert gate.phase == 'VOTING'
    assert gate.checked_at == clock.now
    assert db.session.get(Election, 'election-1').status_changed_by == 'system'


def test_gate_refuses_closed_election(services, make_election, clock):
    make_election()
    clock.advance(hours=2)
    gate = services.phases.gate('election-1')
    assert gate.phase == 'RESULTS'
    with pytest.raises(PhaseError) as exc:
        gate.require_voting_open()
    assert exc.value.current_phase == 'RESULTS'


def test_status_transitions(services, db_session, admin, officer):
    db.session.add(scheduled_election(status=ElectionStatus.DRAFT.value))
    db.session.commit()

    with pytest.raises(PermissionDeniedError):
        services.phases.schedule('election-1', officer)
    assert services.phases.schedule('election-1', admin).status == 'SCHEDULED'
    with pytest.raises(ConflictError):
        services.phases.schedule('election-1', admin)

    services.phases.freeze('election-1', admin, 'Court order')
    with pytest.raises(ConflictError):
        services.phases.activate('election-1', admin)


def test_complete_expires_access(services, make_election, admin):
    make_election()
    services.eligibility.grant_access('voter-1', 'election-1', None, 'officer-1')

    election = services.phases.complete('election-1', admin, 'Closed early')
    assert election.status == 'COMPLETED'
    assert election.current_phase == 'COMPLETED'
    assert services.eligibility.get_access('voter-1', 'election-1').status == AccessStatus.EXPIRED.value


def test_status_report(services, make_election, clock):
    make_election()
    report = services.phases.status_report('election-1')
    assert report['phase'] == 'VOTING'
    assert report['can_vote'] is True
    assert report['checked_at'] == clock.now.isoformat()


def test_sweep_moves_open_elections(services, make_election, clock):
    make_election(election_id='election-1')
    make_election(election_id='election-2', positions=(), status=ElectionStatus.CANCELLED.value)
    clock.advance(hours=2)

    changes = services.phases.sweep()
    assert [(c.election_id, c.previous_phase, c.phase) for c in changes] == [('election-1', 'VOTING', 'RESULTS')]
    assert services.phases.sweep() == []
    # Only an administrator completes an election
    assert db.session.get(Election, 'election-1').status == 'ACTIVE'
