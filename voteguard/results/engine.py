# voteguard/results/engine.py

import logging
from collections import defaultdict
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from voteguard import db
from voteguard.authentication.rbac import Permission, rbac
from voteguard.constants import (
    COUNTABLE_VOTE_STATUSES,
    ElectionPhase,
    RESULT_TRANSITIONS,
    ResultStatus,
    VoteStatus,
)
from voteguard.database.models import Candidate, Election, Position, ResultSnapshot, Vote
from voteguard.database.upsert import upsert
from voteguard.errors import ConflictError, InternalError, NotFoundError, PhaseError, ValidationError
from voteguard.results.cache import CacheError
from voteguard.results.tally import tally_election
from voteguard.voting.receipts import broken_links

logger = logging.getLogger(__name__)

# Snapshots in these states are no longer rewritten by a plain recalculation
FROZEN_RESULT_STATUSES = {ResultStatus.FINAL.value, ResultStatus.VERIFIED.value}
CLOSED_PHASES = {ElectionPhase.RESULTS.value, ElectionPhase.COMPLETED.value}


class ResultEngine:
    def __init__(self, cache, signer, audit_logger=None, phase_engine=None, clock=None):
        self.cache = cache
        self.signer = signer
        self.audit_logger = audit_logger
        self.phase_engine = phase_engine
        self.clock = clock or datetime.utcnow

    def _now(self):
        return self.clock()

    def _commit(self, action):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error during {action}: {e}")
            raise InternalError(f"Could not persist {action}")

    def _get_election(self, election_id):
        if self.phase_engine is not None:
            return self.phase_engine.load(election_id)
        election = db.session.get(Election, election_id)
        if election is None:
            raise NotFoundError("Election not found", election_id=election_id)
        return election

    def _snapshot(self, election_id):
        return ResultSnapshot.query.filter_by(election_id=election_id).first()

    def _require_snapshot(self, election_id):
        snapshot = self._snapshot(election_id)
        if snapshot is None:
            raise NotFoundError("No results have been calculated for this election", election_id=election_id)
        return snapshot

    def _cache_get(self, election_id):
        try:
            return self.cache.get(election_id)
        except CacheError:
            return None

    def _cache_generation(self, election_id):
        try:
            return self.cache.generation(election_id)
        except CacheError:
            return None

    def _cache_set(self, election_id, payload, generation):
        # Without a generation read there is no way to tell a stale write apart
        if generation is None:
            return
        try:
            if not self.cache.set(election_id, payload, generation=generation):
                logger.debug(f"Results for election {election_id} changed while tallying; not cached")
        except CacheError:
            logger.warning(f"Serving uncached results for election {election_id}")

    def tally(self, election_id):
        """Current tally from countable votes, without touching the snapshot."""
        positions = []
        for position in (Position.query.filter_by(election_id=election_id)
                         .order_by(Position.display_order, Position.id).all()):
            candidate_ids = [c.id for c in Candidate.query.filter_by(position_id=position.id).all()]
            positions.append((position.id, position.title, position.max_winners, candidate_ids))

        vote_counts = (db.session.query(Vote.position_id, Vote.candidate_id, Vote.is_abstention, func.count(Vote.id))
                       .filter(Vote.election_id == election_id,
                               Vote.status.in_(COUNTABLE_VOTE_STATUSES))
                       .group_by(Vote.position_id, Vote.candidate_id, Vote.is_abstention)
                       .all())
        return tally_election(positions, vote_counts)

    def calculate(self, election_id, calculated_by=None, use_cache=True, force=False):
        """
        Tally the election and upsert its snapshot.

        A FINAL or VERIFIED snapshot is returned as stored unless force is set;
        any other snapshot is overwritten and keeps its status. The upsert never
        writes the status column, and without force it skips a snapshot that
        was promoted to FINAL or VERIFIED while the tally ran.
        """
        self._get_election(election_id)
        if use_cache and not force:
            cached = self._cache_get(election_id)
            if cached is not None:
                logger.debug(f"Returning cached results for election {election_id}")
                return cached

        generation = self._cache_generation(election_id)
        snapshot = self._snapshot(election_id)
        if snapshot is not None and snapshot.status in FROZEN_RESULT_STATUSES and not force:
            payload = snapshot.to_dict()
            self._cache_set(election_id, payload, generation)
            return payload

        positions, total_votes = self.tally(election_id)
        now = self._now()
        table = ResultSnapshot.__table__
        written = upsert(ResultSnapshot, 'election_id', {
            'election_id': election_id,
            'status': ResultStatus.PROVISIONAL.value,
            'positions': positions,
            'total_votes': total_votes,
            'calculated_at': now,
            'calculated_by': calculated_by,
        }, set_={
            'positions': positions,
            'total_votes': total_votes,
            'calculated_at': now,
            'calculated_by': calculated_by,
        }, where=None if force else table.c.status.notin_(FROZEN_RESULT_STATUSES))
        self._commit('result snapshot')
        if not written:
            logger.info(f"Results for election {election_id} were frozen during calculation; keeping stored snapshot")

        payload = self._require_snapshot(election_id).to_dict()
        self._cache_set(election_id, payload, generation)
        if written:
            logger.info(f"Calculated results for election {election_id}: {total_votes} votes")
        return payload

    def get(self, election_id):
        return self.calculate(election_id)

    def invalidate(self, election_id):
        try:
            self.cache.invalidate(election_id)
        except CacheError:
            # Entry still expires on its TTL
            logger.warning(f"Could not invalidate cached results for election {election_id}")

    def promote(self, election_id, status, actor, notes=None):
        rbac.require(actor, Permission.PUBLISH_RESULTS)
        if status not in {s.value for s in ResultStatus}:
            raise ValidationError(f"Unknown result status {status}", field='status')
        election = self._get_election(election_id)
        snapshot = self._require_snapshot(election_id)
        if status not in RESULT_TRANSITIONS[snapshot.status]:
            raise ConflictError(f"Cannot move results from {snapshot.status} to {status}", status=snapshot.status)
        if status in FROZEN_RESULT_STATUSES and election.current_phase not in CLOSED_PHASES:
            raise PhaseError("Results can only be finalized after voting closes",
                             current_phase=election.current_phase, status=election.status)

        previous = snapshot.status
        snapshot.status = status
        if notes:
            snapshot.notes = notes
        if status == ResultStatus.VERIFIED.value:
            snapshot.verified_by = actor.user_id
            snapshot.verified_at = self._now()
        self._commit('result promotion')
        self.invalidate(election_id)

        if self.audit_logger is not None:
            self.audit_logger.log_event('RESULTS_STATUS_CHANGED', {
                'election_id': election_id, 'previous_status': previous, 'status': status, 'notes': notes,
            }, user_id=actor.user_id)
        logger.info(f"Results for election {election_id} moved {previous} -> {status} by {actor.user_id}")
        return snapshot.to_dict()

    def finalize(self, election_id, actor, notes=None):
        """Mark countable votes COUNTED, recalculate and promote the snapshot to FINAL."""
        rbac.require(actor, Permission.PUBLISH_RESULTS)
        election = self._get_election(election_id)
        if election.current_phase not in CLOSED_PHASES:
            raise PhaseError("Results can only be finalized after voting closes",
                             current_phase=election.current_phase, status=election.status)

        now = self._now()
        for vote in Vote.query.filter(Vote.election_id == election_id,
                                      Vote.status.in_([VoteStatus.CAST.value, VoteStatus.VERIFIED.value])).all():
            vote.status = VoteStatus.COUNTED.value
            vote.status_changed_at = now
            vote.status_changed_by = actor.user_id
        self._commit('vote counting')

        self.calculate(election_id, calculated_by=actor.user_id, force=True)
        return self.promote(election_id, ResultStatus.FINAL.value, actor, notes)

    def recount(self, election_id, actor):
        """
        Re-verify hash, receipt, signature and chain link of every vote.

        Votes that fail become DISPUTED and raise a security event; intact
        COUNTED votes become RECOUNTED. The snapshot is recalculated, and moved
        to CONTESTED when anything was disputed and the transition is allowed.
        """
        rbac.require(actor, Permission.RECOUNT_VOTES)
        self._get_election(election_id)
        now = self._now()

        by_voter = defaultdict(list)
        for vote in Vote.query.filter_by(election_id=election_id).all():
            by_voter[vote.voter_id].append(vote)

        disputed, recounted, checked = [], 0, 0
        for votes in by_voter.values():
            chain_failures = broken_links(votes)
            for vote in votes:
                # Invalidated votes still anchor the chain but are not re-judged
                if vote.status == VoteStatus.INVALID.value:
                    continue
                checked += 1
                failures = self.signer.check_vote(vote)
                if vote.id in chain_failures:
                    failures.append('previous_hash')
                if failures:
                    if vote.status != VoteStatus.DISPUTED.value:
                        vote.status = VoteStatus.DISPUTED.value
                        vote.status_changed_at = now
                        vote.status_changed_by = actor.user_id
                        vote.status_reason = f"Integrity check failed: {', '.join(failures)}"
                    disputed.append(vote.id)
                    if self.audit_logger is not None:
                        self.audit_logger.log_security_event('VOTE_INTEGRITY_FAILURE', {
                            'election_id': election_id, 'vote_id': vote.id, 'failed_checks': failures,
                        }, user_id=actor.user_id, severity='CRITICAL')
                elif vote.status == VoteStatus.COUNTED.value:
                    vote.status = VoteStatus.RECOUNTED.value
                    vote.status_changed_at = now
                    vote.status_changed_by = actor.user_id
                    recounted += 1
        self._commit('recount')

        snapshot = self.calculate(election_id, calculated_by=actor.user_id, force=True)
        if disputed and ResultStatus.CONTESTED.value in RESULT_TRANSITIONS[snapshot['status']]:
            stored = self._require_snapshot(election_id)
            stored.status = ResultStatus.CONTESTED.value
            stored.notes = f"{len(disputed)} vote(s) failed integrity checks on recount"
            self._commit('result contest')
            self.invalidate(election_id)
            snapshot = stored.to_dict()

        if self.audit_logger is not None:
            self.audit_logger.log_event('RESULTS_RECOUNTED', {
                'election_id': election_id, 'checked': checked, 'disputed': len(disputed), 'recounted': recounted,
            }, user_id=actor.user_id)
        logger.info(f"Recount of election {election_id}: {checked} checked, {len(disputed)} disputed")
        return {'checked': checked, 'disputed': disputed, 'recounted': recounted, 'results': snapshot}
