"""
WebAuthn challenge issuance and single-use consumption.

Challenges are stored in Redis with a TTL when Redis is available and in a
locked in-memory map otherwise. Consuming a challenge deletes it, so a
challenge can satisfy at most one assertion.
"""
import os
import time
import secrets
import logging
import threading
from typing import Dict, Optional

import redis

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 20


_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if Redis is not configured or unavailable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    host = os.getenv("REDIS_HOST")
    if not host:
        return None
    port = int(os.getenv("REDIS_PORT", "6379"))
    password = os.getenv("REDIS_PASSWORD", "") or None
    db = int(os.getenv("REDIS_DB", "0"))

    try:
        _redis_client = redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        _redis_client.ping()
        logger.info(f"Redis connected: {host}:{port}")
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Challenges will use in-memory storage.")
        _redis_client = None
        return None


class ChallengeStore:
    """
    Issued WebAuthn challenges.

    Example usage:
        store = ChallengeStore(get_redis_client(), ttl_seconds=300)
        challenge = store.issue_challenge()
        ...
        if not store.verify_and_consume(client_data_challenge):
            reject()
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._memory_store: Dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(challenge: bytes) -> str:
        return f"keyward:webauthn_challenge:{challenge.hex()}"

    def issue_challenge(self) -> bytes:
        """Create and remember a fresh random challenge."""
        challenge = secrets.token_bytes(CHALLENGE_BYTES)

        if self.redis is not None:
            try:
                self.redis.setex(self._key(challenge), self.ttl_seconds, "1")
                return challenge
            except redis.RedisError as e:
                logger.warning(f"Redis error storing WebAuthn challenge: {e}")

        with self._lock:
            self._prune(time.time())
            self._memory_store[challenge.hex()] = time.time() + self.ttl_seconds
        return challenge

    def verify_and_consume(self, challenge: bytes) -> bool:
        """
        Check that ``challenge`` was issued, has not expired and has not been
        used, and remove it.
        """
        if not challenge:
            return False

        if self.redis is not None:
            try:
                # DELETE reports how many keys it removed, so only one caller wins.
                return self.redis.delete(self._key(challenge)) == 1
            except redis.RedisError as e:
                logger.warning(f"Redis error consuming WebAuthn challenge: {e}")

        with self._lock:
            expires_at = self._memory_store.pop(challenge.hex(), None)
        return expires_at is not None and time.time() < expires_at

    def _prune(self, now: float) -> None:
        expired = [key for key, expires_at in self._memory_store.items() if expires_at <= now]
        for key in expired:
            del self._memory_store[key]
