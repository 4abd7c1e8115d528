# voteguard/constants.py

from enum import Enum


class ElectionStatus(str, Enum):
    DRAFT = 'DRAFT'
    SCHEDULED = 'SCHEDULED'
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    FROZEN = 'FROZEN'


class ElectionPhase(str, Enum):
    REGISTRATION = 'REGISTRATION'
    NOMINATION = 'NOMINATION'
    CAMPAIGN = 'CAMPAIGN'
    VOTING = 'VOTING'
    RESULTS = 'RESULTS'
    COMPLETED = 'COMPLETED'


class AccessStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    SUSPENDED = 'SUSPENDED'
    REVOKED = 'REVOKED'
    EXPIRED = 'EXPIRED'


class VoteStatus(str, Enum):
    CAST = 'CAST'
    VERIFIED = 'VERIFIED'
    COUNTED = 'COUNTED'
    DISPUTED = 'DISPUTED'
    INVALID = 'INVALID'
    RECOUNTED = 'RECOUNTED'


class ResultStatus(str, Enum):
    PROVISIONAL = 'PROVISIONAL'
    FINAL = 'FINAL'
    CONTESTED = 'CONTESTED'
    VERIFIED = 'VERIFIED'


class AttemptOutcome(str, Enum):
    SUCCESS = 'SUCCESS'
    NOT_FOUND = 'NOT_FOUND'
    DEACTIVATED = 'DEACTIVATED'
    LOCKED = 'LOCKED'
    INVALID_CODE = 'INVALID_CODE'
    ALREADY_VOTED = 'ALREADY_VOTED'


PHASE_ORDER = [
    ElectionPhase.REGISTRATION,
    ElectionPhase.NOMINATION,
    ElectionPhase.CAMPAIGN,
    ElectionPhase.VOTING,
    ElectionPhase.RESULTS,
    ElectionPhase.COMPLETED,
]

TERMINAL_ELECTION_STATUSES = {
    ElectionStatus.COMPLETED.value,
    ElectionStatus.CANCELLED.value,
    ElectionStatus.FROZEN.value,
}

# Votes that count towards a tally
COUNTABLE_VOTE_STATUSES = {
    VoteStatus.CAST.value,
    VoteStatus.VERIFIED.value,
    VoteStatus.COUNTED.value,
    VoteStatus.RECOUNTED.value,
}

# Forward-only progression; DISPUTED and INVALID sit outside it
VOTE_STATUS_RANK = {
    VoteStatus.CAST.value: 0,
    VoteStatus.VERIFIED.value: 1,
    VoteStatus.COUNTED.value: 2,
    VoteStatus.RECOUNTED.value: 3,
}

RESULT_TRANSITIONS = {
    ResultStatus.PROVISIONAL.value: {ResultStatus.FINAL.value, ResultStatus.CONTESTED.value},
    ResultStatus.FINAL.value: {ResultStatus.VERIFIED.value, ResultStatus.CONTESTED.value},
    ResultStatus.CONTESTED.value: {ResultStatus.FINAL.value, ResultStatus.PROVISIONAL.value},
    ResultStatus.VERIFIED.value: set(),
}
