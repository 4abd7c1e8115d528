# tests/conftest.py
import os
import tempfile
from datetime import datetime, timedelta

import pytest

# Configuration is read when voteguard is imported, so the environment has to be in place first
_workdir = tempfile.mkdtemp(prefix='voteguard-tests-')
os.environ.setdefault('DATABASE_URL', 'sqlite:///' + os.path.join(_workdir, 'voteguard.db'))
os.environ.setdefault('AUDIT_LOG_DIR', os.path.join(_workdir, 'audit'))
os.environ.setdefault('JWT_SECRET_KEY', 'test-jwt-secret-key-that-is-long-enough-for-hs256')
os.environ.setdefault('CODE_HASH_TIME_COST', '1')
os.environ.setdefault('CODE_HASH_MEMORY_COST', '1024')
os.environ.setdefault('RATELIMIT_ENABLED', 'false')
os.environ.setdefault('RESULT_CACHE_BACKEND', 'database')
os.environ.setdefault('NOTIFY_WEBHOOK_URL', '')
os.environ.setdefault('TESTING', 'true')

from voteguard import app, db  # noqa: E402
from voteguard.audit.audit_logger import AuditLogger  # noqa: E402
from voteguard.authentication.rbac import Actor, UserRole  # noqa: E402
from voteguard.constants import ElectionPhase, ElectionStatus  # noqa: E402
from voteguard.database.models import Candidate, Election, Position  # noqa: E402
from voteguard.notifications.dispatcher import NotificationDispatcher  # noqa: E402
from voteguard.results.cache import DatabaseResultCache  # noqa: E402
from voteguard.services import build_services  # noqa: E402
from voteguard.voting.receipts import VoteSigner  # noqa: E402


class FrozenClock:
    """Callable stand-in for datetime.utcnow that only moves when told to."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
def db_session():
    app.config['TESTING'] = True
    with app.app_context():
        db.create_all()
        yield db.session
        db.session.remove()
        db.drop_all()


@pytest.fixture
def audit_logger(tmp_path):
    return AuditLogger(log_dir=str(tmp_path / 'audit'))


@pytest.fixture
def services(db_session, clock, audit_logger):
    return build_services(
        clock=clock,
        audit_logger=audit_logger,
        notifier=NotificationDispatcher(start_worker=False),
        cache=DatabaseResultCache(ttl=300, clock=clock),
        signer=VoteSigner(),
    )


@pytest.fixture
def admin():
    return Actor('admin-1', UserRole.ADMINISTRATOR.value)


@pytest.fixture
def officer():
    return Actor('officer-1', UserRole.ELECTION_OFFICER.value)


@pytest.fixture
def voter_actor():
    return Actor('voter-1', UserRole.VOTER.value)


def create_election(now, election_id='election-1', status=ElectionStatus.ACTIVE.value,
                    phase=ElectionPhase.VOTING.value, start=None, end=None,
                    positions=(('president', 1, ('alice', 'bob')),), **schedule):
    """Persist an election with its positions and candidates. Voting is open around `now` by default."""
    election = Election(
        id=election_id,
        title='Student Council',
        status=status,
        current_phase=phase,
        start_datetime=start or now - timedelta(hours=1),
        end_datetime=end or now + timedelta(hours=1),
        **schedule
    )
    db.session.add(election)
    for order, (position_id, max_winners, candidate_ids) in enumerate(positions):
        db.session.add(Position(id=position_id, election_id=election_id, title=position_id.title(),
                                max_winners=max_winners, display_order=order))
        for candidate_id in candidate_ids:
            db.session.add(Candidate(id=candidate_id, position_id=position_id, name=candidate_id.title()))
    db.session.commit()
    return election


@pytest.fixture
def make_election(db_session, clock):
    def _make(**kwargs):
        return create_election(clock.now, **kwargs)
    return _make


@pytest.fixture
def enroll(services, officer):
    """Issue a code for the voter and make them eligible for the given positions. Returns the plaintext code."""
    def _enroll(voter_id, election_id='election-1', position_ids=('president',)):
        issued = services.codes.generate(voter_id, election_id, officer)
        for position_id in position_ids:
            services.eligibility.grant_eligibility(voter_id, election_id, position_id, 'registered', officer)
        return issued.plaintext
    return _enroll
