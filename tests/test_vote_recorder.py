# tests/test_vote_recorder.py
import json
import threading

import pytest

from voteguard import app, db
from voteguard.database.models import CodeAttempt, SecretCode, Vote
from voteguard.errors import (
    AlreadyVotedError,
    IntegrityViolationError,
    InvalidCodeError,
    NotEligibleError,
    NotFoundError,
    PhaseError,
    ValidationError,
)
from voteguard.security.secret_codes import SecretCodeManager
from voteguard.voting.receipts import compute_vote_hash
from voteguard.voting.recorder import VoteRecorder

TWO_POSITIONS = (
    ('president', 1, ('alice', 'bob')),
    ('treasurer', 1, ('carol', 'dave')),
)


def test_submit_vote_returns_receipt(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')

    receipt = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    vote = db.session.get(Vote, receipt.vote_id)
    assert len(receipt.receipt_hash) == 16
    assert receipt.receipt_hash == receipt.receipt_hash.upper()
    assert receipt.receipt_hash == vote.vote_hash[:16].upper()
    assert vote.status == 'CAST'
    assert vote.election_phase == 'VOTING'
    assert vote.vote_hash == compute_vote_hash('voter-1', 'president', 'alice', vote.timestamp, vote.salt)
    assert services.signer.check_vote(vote) == []


def test_submit_vote_updates_progress_and_usage(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    access = services.eligibility.get_access('voter-1', 'election-1')
    assert access.total_voted == 1
    assert access.progress == 100
    record = SecretCode.query.filter_by(voter_id='voter-1').one()
    assert record.total_uses == 1
    assert [u.position_id for u in record.usage_log] == ['president']


def test_resubmission_returns_original_receipt(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    first = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)
    again = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    assert again == first
    assert Vote.query.count() == 1


def test_changed_choice_is_rejected(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    with pytest.raises(AlreadyVotedError):
        services.recorder.submit_vote('voter-1', 'election-1', 'president', 'bob', code)
    assert Vote.query.one().candidate_id == 'alice'


def test_abstention(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    receipt = services.recorder.submit_vote('voter-1', 'election-1', 'president', None, code,
                                            is_abstention=True, abstention_reason='No preference')

    vote = db.session.get(Vote, receipt.vote_id)
    assert vote.is_abstention and vote.candidate_id is None
    assert vote.abstention_reason == 'No preference'
    assert vote.vote_hash == compute_vote_hash('voter-1', 'president', 'ABSTAIN', vote.timestamp, vote.salt)


def test_abstention_needs_reason(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    with pytest.raises(ValidationError):
        services.recorder.submit_vote('voter-1', 'election-1', 'president', None, code, is_abstention=True)


def test_candidate_must_stand_for_position(services, make_election, enroll):
    make_election(positions=TWO_POSITIONS)
    code = enroll('voter-1', position_ids=('president', 'treasurer'))
    with pytest.raises(ValidationError):
        services.recorder.submit_vote('voter-1', 'election-1', 'president', 'carol', code)
    assert Vote.query.count() == 0


def test_not_eligible_for_position(services, make_election, enroll):
    make_election(positions=TWO_POSITIONS)
    code = enroll('voter-1', position_ids=('president',))
    with pytest.raises(NotEligibleError):
        services.recorder.submit_vote('voter-1', 'election-1', 'treasurer', 'carol', code)


def test_voting_closed(services, make_election, enroll, clock):
    make_election()
    code = enroll('voter-1')
    clock.advance(hours=2)

    with pytest.raises(PhaseError):
        services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)
    assert Vote.query.count() == 0
    assert services.eligibility.get_access('voter-1', 'election-1').total_voted == 0


def test_votes_are_chained_per_voter(services, make_election, enroll):
    make_election(positions=TWO_POSITIONS)
    code = enroll('voter-1', position_ids=('president', 'treasurer'))
    first = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)
    second = services.recorder.submit_vote('voter-1', 'election-1', 'treasurer', 'carol', code)

    first_vote = db.session.get(Vote, first.vote_id)
    second_vote = db.session.get(Vote, second.vote_id)
    assert first_vote.previous_hash is None
    assert second_vote.previous_hash == first_vote.vote_hash
    assert services.eligibility.get_access('voter-1', 'election-1').progress == 100


def test_concurrent_submissions_record_one_vote(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    db.session.commit()

    receipts, errors = [], []

    def submit():
        with app.app_context():
            try:
                receipts.append(services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code))
            except Exception as e:  # collected for the assertion below
                errors.append(e)

    threads = [threading.Thread(target=submit) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len({r.receipt_hash for r in receipts}) == 1
    db.session.expire_all()
    assert Vote.query.count() == 1
    assert services.eligibility.get_access('voter-1', 'election-1').total_voted == 1


def test_vote_cast_audit_omits_choice(services, make_election, enroll, audit_logger):
    make_election()
    code = enroll('voter-1')
    services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    with open(audit_logger.log_file) as f:
        entries = [json.loads(line) for line in f if line.strip()]
    cast = [e for e in entries if e['event_type'] == 'VOTE_CAST']
    assert len(cast) == 1
    assert 'candidate_id' not in cast[0]['data']


def test_receipt_notification_queued(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)
    # One secret code, one receipt
    assert services.notifier.get_metrics()['queued'] == 2


def test_verify_vote(services, make_election, enroll, admin):
    make_election()
    code = enroll('voter-1')
    receipt = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    assert services.recorder.verify_vote(receipt.vote_id, admin).status == 'VERIFIED'


def test_verify_detects_tampering(services, make_election, enroll, admin):
    make_election()
    code = enroll('voter-1')
    receipt = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)
    vote = db.session.get(Vote, receipt.vote_id)
    vote.candidate_id = 'bob'
    db.session.commit()

    with pytest.raises(IntegrityViolationError) as exc:
        services.recorder.verify_vote(receipt.vote_id, admin)
    assert exc.value.details['failed_checks'] == ['vote_hash']
    assert db.session.get(Vote, receipt.vote_id).status == 'DISPUTED'


def test_invalidate_and_dispute(services, make_election, enroll, admin):
    make_election()
    code = enroll('voter-1')
    receipt = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    services.recorder.dispute_vote(receipt.vote_id, admin, 'Voter complaint')
    assert db.session.get(Vote, receipt.vote_id).status == 'DISPUTED'
    services.recorder.invalidate_vote(receipt.vote_id, admin, 'Duplicate identity')
    vote = db.session.get(Vote, receipt.vote_id)
    assert vote.status == 'INVALID'
    assert vote.status_changed_by == 'admin-1'


def test_find_by_receipt(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    receipt = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    assert services.recorder.find_by_receipt(receipt.receipt_hash.lower()).id == receipt.vote_id
    with pytest.raises(NotFoundError):
        services.recorder.find_by_receipt('0000000000000000')


def test_replay_is_not_logged_as_manipulation(services, make_election, enroll, audit_logger):
    make_election()
    code = enroll('voter-1')
    first = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)
    again = services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    assert again == first
    assert [a.outcome for a in CodeAttempt.query.order_by(CodeAttempt.id).all()] == ['SUCCESS']
    with open(audit_logger.log_file) as f:
        events = [json.loads(line)['event_type'] for line in f if line.strip()]
    assert 'VOTE_MANIPULATION_ATTEMPT' not in events
    assert events.count('VOTE_REPLAYED') == 1


def test_replay_with_wrong_code_is_still_checked(services, make_election, enroll):
    make_election()
    code = enroll('voter-1')
    services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', code)

    wrong = 'ZZ9999' if code != 'ZZ9999' else 'ZZ9998'
    with pytest.raises(InvalidCodeError):
        services.recorder.submit_vote('voter-1', 'election-1', 'president', 'alice', wrong)


def test_workers_keep_one_chain_per_voter(services, make_election, enroll, audit_logger, clock, admin):
    """Two workers with their own locks voting for one voter on different positions still chain the votes."""
    make_election(positions=TWO_POSITIONS)
    code = enroll('voter-1', position_ids=('president', 'treasurer'))
    db.session.commit()

    start = threading.Barrier(2)
    receipts, errors = [], []

    def worker(position_id, candidate_id):
        with app.app_context():
            codes = SecretCodeManager(services.eligibility, audit_logger, hasher=services.codes.hasher, clock=clock)
            recorder = VoteRecorder(services.phases, codes, services.eligibility, services.signer,
                                    services.results, audit_logger, clock=clock)
            start.wait()
            try:
                receipts.append(recorder.submit_vote('voter-1', 'election-1', position_id, candidate_id, code))
            except Exception as e:  # collected for the assertion below
                errors.append(e)

    threads = [threading.Thread(target=worker, args=('president', 'alice')),
               threading.Thread(target=worker, args=('treasurer', 'carol'))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(receipts) == 2
    db.session.expire_all()
    votes = Vote.query.filter_by(voter_id='voter-1').all()
    assert len([v for v in votes if v.previous_hash is None]) == 1
    assert services.eligibility.get_access('voter-1', 'election-1').total_voted == 2
    assert services.results.recount('election-1', admin)['disputed'] == []
