"""
Redis-backed login sessions and OAuth state.
"""

import secrets
import redis.asyncio as redis
from typing import Dict, Any, Optional

from api.src.config import get_settings

settings = get_settings()

SESSION_PREFIX = "deploymate:session"
STATE_PREFIX = "deploymate:oauth-state"
STATE_TTL_SECONDS = 600

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def create_session(user: Dict[str, Any], access_token: str, refresh_token: str = "") -> str:
    """Store a GitLab login and return its session id."""
    client = await get_redis_client()
    session_id = secrets.token_urlsafe(32)
    key = f"{SESSION_PREFIX}:{session_id}"

    try:
        await client.hset(key, mapping={
            "user_id": str(user.get("id", "")),
            "username": user.get("username", ""),
            "email": user.get("email") or "",
            "access_token": access_token,
            "refresh_token": refresh_token or "",
        })
        await client.expire(key, settings.session_ttl_seconds)
    finally:
        await client.aclose()

    return session_id

async def get_session(session_id: str) -> Optional[Dict[str, str]]:
    client = await get_redis_client()

    try:
        data = await client.hgetall(f"{SESSION_PREFIX}:{session_id}")
        return data or None
    finally:
        await client.aclose()

async def delete_session(session_id: str):
    client = await get_redis_client()

    try:
        await client.delete(f"{SESSION_PREFIX}:{session_id}")
    finally:
        await client.aclose()

async def save_oauth_state(state: str):
    client = await get_redis_client()

    try:
        await client.set(f"{STATE_PREFIX}:{state}", "1", ex=STATE_TTL_SECONDS)
    finally:
        await client.aclose()

async def consume_oauth_state(state: str) -> bool:
    """True if the state was issued by us and not used before."""
    client = await get_redis_client()

    try:
        return await client.delete(f"{STATE_PREFIX}:{state}") == 1
    finally:
        await client.aclose()
