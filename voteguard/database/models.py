# voteguard/database/models.py

import uuid
from datetime import datetime

from voteguard import db
from voteguard.constants import (
    AccessStatus,
    COUNTABLE_VOTE_STATUSES,
    ElectionPhase,
    ElectionStatus,
    ResultStatus,
    TERMINAL_ELECTION_STATUSES,
    VoteStatus,
)


def new_id():
    return uuid.uuid4().hex


def _iso(value):
    return value.isoformat() if value else None


class Election(db.Model):
    __tablename__ = 'elections'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    title = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ElectionStatus.DRAFT.value)
    current_phase = db.Column(db.String(20), nullable=False, default=ElectionPhase.REGISTRATION.value)
    start_datetime = db.Column(db.DateTime, nullable=False)
    end_datetime = db.Column(db.DateTime, nullable=False)
    registration_deadline = db.Column(db.DateTime, nullable=True)
    nomination_deadline = db.Column(db.DateTime, nullable=True)
    campaign_start = db.Column(db.DateTime, nullable=True)
    campaign_end = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    status_changed_by = db.Column(db.String(64), nullable=True)
    status_reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    positions = db.relationship('Position', backref='election', lazy=True, order_by='Position.display_order')

    @property
    def duration(self):
        return self.end_datetime - self.start_datetime

    @property
    def is_terminal(self):
        return self.status in TERMINAL_ELECTION_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'status': self.status,
            'current_phase': self.current_phase,
            'start_datetime': _iso(self.start_datetime),
            'end_datetime': _iso(self.end_datetime),
            'registration_deadline': _iso(self.registration_deadline),
            'nomination_deadline': _iso(self.nomination_deadline),
            'campaign_start': _iso(self.campaign_start),
            'campaign_end': _iso(self.campaign_end),
        }

    def __repr__(self):
        return f'<Election {self.id} {self.status}/{self.current_phase}>'


class Position(db.Model):
    __tablename__ = 'positions'
    id = db.Column(db.String(64), primary_key=True, default=new_id)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    max_winners = db.Column(db.Integer, nullable=False, default=1)
    display_order = db.Column(db.Integer, nullable=False, default=0)

    candidates = db.relationship('Candidate', backref='position', lazy=True)


class Candidate(db.Model):
    __tablename__ = 'candidates'
    id = db.Column(db.String(64), primary_key=True, default=new_id)
    position_id = db.Column(db.String(64), db.ForeignKey('positions.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)


class SecretCode(db.Model):
    __tablename__ = 'secret_codes'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    voter_id = db.Column(db.String(64), nullable=False)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False)
    code_hash = db.Column(db.String(255), nullable=False)  # argon2id of code + salt
    salt = db.Column(db.String(64), nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_until = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    issued_by = db.Column(db.String(64), nullable=False)
    issued_at = db.Column(db.DateTime, default=datetime.utcnow)
    deactivated_at = db.Column(db.DateTime, nullable=True)
    deactivated_by = db.Column(db.String(64), nullable=True)
    deactivation_reason = db.Column(db.String(255), nullable=True)
    total_uses = db.Column(db.Integer, nullable=False, default=0)
    last_used_at = db.Column(db.DateTime, nullable=True)
    last_attempt_at = db.Column(db.DateTime, nullable=True)

    usage_log = db.relationship('SecretCodeUsage', backref='secret_code', lazy='selectin',
                                order_by='SecretCodeUsage.used_at')

    __table_args__ = (
        # One active code per voter and election; inactive codes are kept for audit
        db.Index('uq_secret_codes_active_pair', 'voter_id', 'election_id', unique=True,
                 sqlite_where=db.text('is_active = 1'),
                 postgresql_where=db.text('is_active')),
        db.Index('ix_secret_codes_election_active', 'election_id', 'is_active'),
    )

    @property
    def remaining_attempts(self):
        return max(0, self.max_attempts - self.attempts)

    def lock_status(self, now):
        if not self.is_active:
            return 'DEACTIVATED'
        if self.is_locked and self.locked_until and now < self.locked_until:
            return 'LOCKED'
        return 'ACTIVE'

    def summary(self, now):
        return {
            'id': self.id,
            'voter_id': self.voter_id,
            'election_id': self.election_id,
            'is_active': self.is_active,
            'status': self.lock_status(now),
            'attempts': self.attempts,
            'remaining_attempts': self.remaining_attempts,
            'total_uses': self.total_uses,
            'positions_voted': len(self.usage_log),
            'last_used_at': _iso(self.last_used_at),
            'issued_at': _iso(self.issued_at),
        }


class SecretCodeUsage(db.Model):
    __tablename__ = 'secret_code_usage'
    id = db.Column(db.Integer, primary_key=True)
    secret_code_id = db.Column(db.String(32), db.ForeignKey('secret_codes.id'), nullable=False, index=True)
    position_id = db.Column(db.String(64), nullable=False)
    candidate_id = db.Column(db.String(64), nullable=True)
    used_at = db.Column(db.DateTime, default=datetime.utcnow)


class CodeAttempt(db.Model):
    __tablename__ = 'code_attempts'
    id = db.Column(db.Integer, primary_key=True)
    secret_code_id = db.Column(db.String(32), nullable=True, index=True)
    voter_id = db.Column(db.String(64), nullable=False)
    election_id = db.Column(db.String(32), nullable=False, index=True)
    position_id = db.Column(db.String(64), nullable=True)
    outcome = db.Column(db.String(20), nullable=False)
    attempted_at = db.Column(db.DateTime, default=datetime.utcnow)


class EligibilityAccess(db.Model):
    __tablename__ = 'eligibility_access'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    voter_id = db.Column(db.String(64), nullable=False)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False)
    secret_code_id = db.Column(db.String(32), db.ForeignKey('secret_codes.id'), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=AccessStatus.ACTIVE.value)
    total_eligible = db.Column(db.Integer, nullable=False, default=0)
    total_voted = db.Column(db.Integer, nullable=False, default=0)
    progress = db.Column(db.Integer, nullable=False, default=0)
    granted_by = db.Column(db.String(64), nullable=True)
    granted_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_vote_at = db.Column(db.DateTime, nullable=True)
    suspended_at = db.Column(db.DateTime, nullable=True)
    suspended_by = db.Column(db.String(64), nullable=True)
    suspension_reason = db.Column(db.String(255), nullable=True)
    revoked_at = db.Column(db.DateTime, nullable=True)
    revoked_by = db.Column(db.String(64), nullable=True)
    revocation_reason = db.Column(db.String(255), nullable=True)
    expired_at = db.Column(db.DateTime, nullable=True)

    eligible_positions = db.relationship('EligiblePosition', backref='access', lazy='selectin',
                                         cascade='all, delete-orphan')
    voted_positions = db.relationship('VotedPosition', backref='access', lazy='selectin',
                                      cascade='all, delete-orphan')

    __table_args__ = (
        db.UniqueConstraint('voter_id', 'election_id', name='uq_eligibility_voter_election'),
        db.Index('ix_eligibility_election_status', 'election_id', 'status'),
    )

    @property
    def eligible_ids(self):
        return {p.position_id for p in self.eligible_positions}

    @property
    def voted_ids(self):
        return {p.position_id for p in self.voted_positions}

    @property
    def is_complete(self):
        return self.total_voted >= self.total_eligible

    @property
    def remaining_positions(self):
        return self.total_eligible - self.total_voted

    def voted_entry(self, position_id):
        for entry in self.voted_positions:
            if entry.position_id == position_id:
                return entry
        return None


class EligiblePosition(db.Model):
    __tablename__ = 'eligible_positions'
    id = db.Column(db.Integer, primary_key=True)
    access_id = db.Column(db.String(32), db.ForeignKey('eligibility_access.id'), nullable=False)
    position_id = db.Column(db.String(64), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    verified_by = db.Column(db.String(64), nullable=True)
    verified_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('access_id', 'position_id', name='uq_eligible_position'),
    )


class VotedPosition(db.Model):
    __tablename__ = 'voted_positions'
    id = db.Column(db.Integer, primary_key=True)
    access_id = db.Column(db.String(32), db.ForeignKey('eligibility_access.id'), nullable=False)
    position_id = db.Column(db.String(64), nullable=False)
    candidate_id = db.Column(db.String(64), nullable=True)
    vote_id = db.Column(db.String(32), nullable=True)
    voted_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('access_id', 'position_id', name='uq_voted_position'),
    )


class Vote(db.Model):
    __tablename__ = 'votes'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False, index=True)
    position_id = db.Column(db.String(64), nullable=False)
    candidate_id = db.Column(db.String(64), nullable=True)  # null for abstentions
    voter_id = db.Column(db.String(64), nullable=False)
    is_abstention = db.Column(db.Boolean, nullable=False, default=False)
    abstention_reason = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=VoteStatus.CAST.value)
    vote_hash = db.Column(db.String(64), nullable=False, unique=True)
    receipt_hash = db.Column(db.String(16), nullable=False, index=True)
    salt = db.Column(db.String(64), nullable=False)
    signature = db.Column(db.Text, nullable=False)  # Ed25519 over vote_hash
    previous_hash = db.Column(db.String(64), nullable=True)  # voter's previous vote in this election
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    election_phase = db.Column(db.String(20), nullable=True)
    status_changed_at = db.Column(db.DateTime, nullable=True)
    status_changed_by = db.Column(db.String(64), nullable=True)
    status_reason = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        db.UniqueConstraint('election_id', 'voter_id', 'position_id', name='uq_vote_voter_position'),
        db.Index('ix_votes_election_position', 'election_id', 'position_id'),
    )

    @property
    def is_valid(self):
        return self.status in COUNTABLE_VOTE_STATUSES

    def summary(self):
        return {
            'id': self.id,
            'election_id': self.election_id,
            'position_id': self.position_id,
            'is_abstention': self.is_abstention,
            'status': self.status,
            'receipt_hash': self.receipt_hash,
            'timestamp': _iso(self.timestamp),
        }

    def __repr__(self):
        return f'<Vote {self.id} {self.status}>'


class ResultSnapshot(db.Model):
    __tablename__ = 'result_snapshots'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    election_id = db.Column(db.String(32), db.ForeignKey('elections.id'), nullable=False, unique=True)
    status = db.Column(db.String(20), nullable=False, default=ResultStatus.PROVISIONAL.value)
    positions = db.Column(db.JSON, nullable=False, default=list)
    total_votes = db.Column(db.Integer, nullable=False, default=0)
    calculated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    calculated_by = db.Column(db.String(64), nullable=True)
    verified_by = db.Column(db.String(64), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    def to_dict(self):
        return {
            'election_id': self.election_id,
            'status': self.status,
            'total_votes': self.total_votes,
            'positions': self.positions,
            'calculated_at': _iso(self.calculated_at),
            'verified_by': self.verified_by,
            'verified_at': _iso(self.verified_at),
            'notes': self.notes,
        }


class ResultCacheEntry(db.Model):
    __tablename__ = 'result_cache'
    election_id = db.Column(db.String(32), primary_key=True)
    # Bumped on every invalidation; a write carrying an older generation is dropped
    generation = db.Column(db.Integer, nullable=False, default=0)
    payload = db.Column(db.JSON)
    expires_at = db.Column(db.DateTime)
