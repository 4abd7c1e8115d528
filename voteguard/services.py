# voteguard/services.py

import logging
from collections import namedtuple

from voteguard.audit.audit_logger import AuditLogger
from voteguard.config import Config
from voteguard.eligibility.tracker import EligibilityTracker
from voteguard.elections.phases import ElectionPhaseEngine
from voteguard.errors import InternalError
from voteguard.notifications.dispatcher import NotificationDispatcher
from voteguard.results.cache import build_result_cache
from voteguard.results.engine import ResultEngine
from voteguard.security.code_hashing import CodeHasher
from voteguard.security.input_validator import InputValidator
from voteguard.security.lockout import LockoutPolicy
from voteguard.security.secret_codes import SecretCodeManager
from voteguard.voting.locks import KeyedLocks
from voteguard.voting.recorder import VoteRecorder
from voteguard.voting.receipts import VoteSigner

logger = logging.getLogger(__name__)

Services = namedtuple('Services', ['audit_logger', 'eligibility', 'codes', 'phases', 'signer',
                                   'results', 'recorder', 'notifier', 'validator'])


def build_services(clock=None, audit_logger=None, notifier=None, cache=None, signer=None):
    """
    Wire the voting core together. Every collaborator can be swapped in tests.

    Outside TESTING a VOTE_SIGNING_KEY is required: an ephemeral key would
    leave every stored signature unverifiable after a restart.
    """
    audit_logger = audit_logger or AuditLogger(Config.AUDIT_LOG_DIR, Config.AUDIT_SIGNING_KEY or None)
    if notifier is None:
        notifier = NotificationDispatcher(Config.NOTIFY_WEBHOOK_URL or None, timeout=Config.NOTIFY_TIMEOUT)
    if signer is None:
        if not Config.VOTE_SIGNING_KEY:
            if not Config.TESTING:
                logger.critical("VOTE_SIGNING_KEY is not set; refusing to start")
                raise InternalError("VOTE_SIGNING_KEY must be configured")
            logger.warning("VOTE_SIGNING_KEY not set; votes are signed with an ephemeral key")
        signer = VoteSigner(Config.VOTE_SIGNING_KEY or None)
    validator = InputValidator()
    # One lock table for code checks and vote inserts, so a voter's guesses
    # and ballots in this process run one at a time
    locks = KeyedLocks()

    eligibility = EligibilityTracker(audit_logger, clock=clock)
    codes = SecretCodeManager(
        eligibility,
        audit_logger,
        hasher=CodeHasher(time_cost=Config.CODE_HASH_TIME_COST, memory_cost=Config.CODE_HASH_MEMORY_COST),
        lockout=LockoutPolicy(Config.CODE_MAX_ATTEMPTS, Config.CODE_LOCKOUT_MINUTES),
        notifier=notifier,
        locks=locks,
        clock=clock,
    )
    phases = ElectionPhaseEngine(audit_logger, eligibility, clock=clock)
    results = ResultEngine(cache or build_result_cache(clock=clock), signer, audit_logger, phases, clock=clock)
    recorder = VoteRecorder(phases, codes, eligibility, signer, results, audit_logger, notifier,
                            locks=locks, validator=validator, clock=clock)
    return Services(audit_logger, eligibility, codes, phases, signer, results, recorder, notifier, validator)
