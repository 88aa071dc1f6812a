from __future__ import annotations

import uuid

import redis

from branchlms.core.config import settings


def get_redis() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def proctoring_lock_key(site_id: str, user_id: uuid.UUID, course_id: uuid.UUID) -> str:
    return f"proctoring_lock:{site_id}:{user_id}:{course_id}"


def set_proctoring_lock(site_id: str, user_id: uuid.UUID, course_id: uuid.UUID, reason: str) -> None:
    get_redis().set(
        proctoring_lock_key(site_id, user_id, course_id),
        str(reason or "failed"),
        ex=int(settings.proctoring_lock_seconds),
    )


def get_proctoring_lock(site_id: str, user_id: uuid.UUID, course_id: uuid.UUID) -> str | None:
    v = get_redis().get(proctoring_lock_key(site_id, user_id, course_id))
    return str(v) if v else None


def clear_proctoring_lock(site_id: str, user_id: uuid.UUID, course_id: uuid.UUID) -> None:
    get_redis().delete(proctoring_lock_key(site_id, user_id, course_id))
