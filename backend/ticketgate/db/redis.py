"""Redis client for gatekeeper sessions and the indexer leader lock"""
import logging
import secrets
from typing import Optional

import redis

from ticketgate.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


# Key prefixes
GATEKEEPER_SESSION_PREFIX = "gatekeeper_session"
INDEXER_LOCK_PREFIX = "lock:indexer"


# ============================================================================
# GATEKEEPER SESSIONS
# ============================================================================

def set_gatekeeper_session(session_token: str, gatekeeper_id: str, ttl: Optional[int] = None) -> None:
    """Bind a gatekeeper session token to a gatekeeper identity.

    Sessions are issued by the gatekeeper login flow; the scan endpoint only
    reads them.

    Args:
        session_token: Opaque token presented by the scanning device
        gatekeeper_id: Gatekeeper identity (wallet address or access code id)
        ttl: Time-to-live in seconds (defaults to GATEKEEPER_SESSION_TTL_SECONDS)
    """
    ttl = ttl or settings.GATEKEEPER_SESSION_TTL_SECONDS
    get_redis_client().setex(f"{GATEKEEPER_SESSION_PREFIX}:{session_token}", ttl, gatekeeper_id.lower())


def get_gatekeeper_session(session_token: str) -> Optional[str]:
    """Return the gatekeeper identity for a session token, or None if unknown/expired"""
    return get_redis_client().get(f"{GATEKEEPER_SESSION_PREFIX}:{session_token}")


def delete_gatekeeper_session(session_token: str) -> None:
    get_redis_client().delete(f"{GATEKEEPER_SESSION_PREFIX}:{session_token}")


# ============================================================================
# DISTRIBUTED LOCKS
# ============================================================================

def acquire_lock(lock_key: str, timeout: int = 30) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    The lock value is a random token so that only the holder can extend or
    release it.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds (default 30)

    Returns:
        The owner token if the lock was acquired, None if it is already held
    """
    token = secrets.token_hex(16)
    # SET key value NX EX timeout - atomically set if not exists with expiration
    if get_redis_client().set(lock_key, token, nx=True, ex=timeout):
        return token
    return None


def _if_lock_owner(lock_key: str, token: str, action) -> bool:
    """Run action(pipe) in a transaction only while lock_key still holds token"""
    with get_redis_client().pipeline() as pipe:
        try:
            pipe.watch(lock_key)
            if pipe.get(lock_key) != token:
                pipe.unwatch()
                return False
            pipe.multi()
            action(pipe)
            pipe.execute()
            return True
        except redis.WatchError:
            return False


def extend_lock(lock_key: str, token: str, timeout: int = 30) -> bool:
    """Reset the lock TTL if we still own it.

    Returns:
        False if the lock expired or was taken over by another owner
    """
    return _if_lock_owner(lock_key, token, lambda pipe: pipe.expire(lock_key, timeout))


def release_lock(lock_key: str, token: str) -> bool:
    """Release a distributed lock, only if it is still held with our token.

    Args:
        lock_key: The lock key to release
        token: Owner token returned by acquire_lock

    Returns:
        True if the lock was deleted, False if we no longer owned it
    """
    return _if_lock_owner(lock_key, token, lambda pipe: pipe.delete(lock_key))


def indexer_lock_key(contract_address: str) -> str:
    """Lock key guarding poll cycles for one contract"""
    return f"{INDEXER_LOCK_PREFIX}:{contract_address.lower()}"
