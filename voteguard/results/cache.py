# voteguard/results/cache.py

import json
import logging
from datetime import datetime, timedelta

import redis
from sqlalchemy import null
from sqlalchemy.exc import SQLAlchemyError

from voteguard import db
from voteguard.config import Config
from voteguard.database.models import ResultCacheEntry
from voteguard.database.upsert import upsert
from voteguard.errors import InternalError

logger = logging.getLogger(__name__)


class CacheError(InternalError):
    code = 'CACHE_ERROR'


class ResultCache:
    """
    Result payloads keyed by election id, each with a wall-clock TTL.

    Every invalidation bumps a per-election generation. A writer reads the
    generation before it tallies and passes it to set(); the write is dropped
    when an invalidation landed in between, so a slow tally never puts old
    numbers back after a newer vote cleared them.
    """

    def __init__(self, ttl=300):
        self.ttl = ttl

    def get(self, election_id):
        raise NotImplementedError

    def generation(self, election_id):
        raise NotImplementedError

    def set(self, election_id, payload, ttl=None, generation=None):
        """Store payload; returns False when generation is stale and nothing was written."""
        raise NotImplementedError

    def invalidate(self, election_id):
        raise NotImplementedError


class DatabaseResultCache(ResultCache):
    """Cache rows in the result_cache table; expiry survives restarts."""

    def __init__(self, ttl=300, clock=None):
        super().__init__(ttl)
        self.clock = clock or datetime.utcnow

    def get(self, election_id):
        entry = db.session.get(ResultCacheEntry, election_id, populate_existing=True)
        if entry is None or entry.expires_at is None:
            return None
        if entry.expires_at <= self.clock():
            logger.debug(f"Result cache expired for election {election_id}")
            return None
        return entry.payload

    def generation(self, election_id):
        try:
            current = (db.session.query(ResultCacheEntry.generation)
                       .filter_by(election_id=election_id).scalar())
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Result cache generation read failed for election {election_id}: {e}")
            raise CacheError("Result cache read failed")
        return current or 0

    def set(self, election_id, payload, ttl=None, generation=None):
        expires_at = self.clock() + timedelta(seconds=ttl or self.ttl)
        table = ResultCacheEntry.__table__
        where = None if generation is None else table.c.generation == generation
        try:
            written = upsert(ResultCacheEntry, 'election_id',
                             {'election_id': election_id, 'generation': generation or 0,
                              'payload': payload, 'expires_at': expires_at},
                             set_={'payload': payload, 'expires_at': expires_at},
                             where=where)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Result cache write failed for election {election_id}: {e}")
            raise CacheError("Result cache write failed")
        return written > 0

    def invalidate(self, election_id):
        table = ResultCacheEntry.__table__
        try:
            upsert(ResultCacheEntry, 'election_id',
                   {'election_id': election_id, 'generation': 1, 'payload': null(), 'expires_at': None},
                   set_={'generation': table.c.generation + 1, 'payload': null(), 'expires_at': None})
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Result cache invalidation failed for election {election_id}: {e}")
            raise CacheError("Result cache invalidation failed")
        logger.debug(f"Invalidated result cache for election {election_id}")


class RedisResultCache(ResultCache):
    """Cache keys with a Redis expiry, shared by every app instance."""

    def __init__(self, url=None, ttl=300, client=None):
        super().__init__(ttl)
        if client is None:
            self.pool = redis.ConnectionPool.from_url(
                url or Config.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5,
                health_check_interval=30,
            )
            client = redis.Redis(connection_pool=self.pool)
        self.client = client

    @staticmethod
    def key(election_id):
        return f"election:{election_id}:results"

    @staticmethod
    def generation_key(election_id):
        return f"election:{election_id}:results:generation"

    def get(self, election_id):
        try:
            raw = self.client.get(self.key(election_id))
        except redis.RedisError as e:
            logger.error(f"Redis error reading results for election {election_id}: {e}")
            raise CacheError("Result cache read failed")
        return json.loads(raw) if raw else None

    def generation(self, election_id):
        try:
            return int(self.client.get(self.generation_key(election_id)) or 0)
        except redis.RedisError as e:
            logger.error(f"Redis error reading result generation for election {election_id}: {e}")
            raise CacheError("Result cache read failed")

    def set(self, election_id, payload, ttl=None, generation=None):
        ttl = int(ttl or self.ttl)
        data = json.dumps(payload)
        try:
            if generation is None:
                self.client.setex(self.key(election_id), ttl, data)
                return True
            with self.client.pipeline() as pipe:
                # EXEC fails if an invalidation touches the generation after WATCH
                pipe.watch(self.generation_key(election_id))
                if int(pipe.get(self.generation_key(election_id)) or 0) != generation:
                    return False
                pipe.multi()
                pipe.setex(self.key(election_id), ttl, data)
                pipe.execute()
            return True
        except redis.WatchError:
            logger.debug(f"Results for election {election_id} invalidated during write; dropped")
            return False
        except redis.RedisError as e:
            logger.error(f"Redis error caching results for election {election_id}: {e}")
            raise CacheError("Result cache write failed")

    def invalidate(self, election_id):
        try:
            with self.client.pipeline() as pipe:
                pipe.incr(self.generation_key(election_id))
                pipe.delete(self.key(election_id))
                pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Redis error invalidating results for election {election_id}: {e}")
            raise CacheError("Result cache invalidation failed")
        logger.debug(f"Invalidated result cache for election {election_id}")


def build_result_cache(clock=None):
    if Config.RESULT_CACHE_BACKEND == 'redis':
        return RedisResultCache(Config.REDIS_URL, ttl=Config.RESULT_CACHE_TTL)
    return DatabaseResultCache(ttl=Config.RESULT_CACHE_TTL, clock=clock)
