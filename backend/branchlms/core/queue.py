from __future__ import annotations

import logging

import redis
from redis.exceptions import RedisError
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from branchlms.core.config import settings


log = logging.getLogger(__name__)


def get_queue(name: str | None = None) -> Queue:
    conn = redis.Redis.from_url(settings.redis_url)
    eff = str(name or "").strip() or str(settings.rq_queue_default)
    return Queue(name=eff, connection=conn)


def fetch_job(job_id: str) -> Job | None:
    try:
        conn = redis.Redis.from_url(settings.redis_url)
        return Job.fetch(job_id, connection=conn)
    except NoSuchJobError:
        return None
    except RedisError:
        log.warning("job lookup failed job_id=%s", job_id, exc_info=True)
        return None


def job_status(job: Job) -> dict:
    status = job.get_status(refresh=True)
    out: dict = {
        "job_id": job.id,
        "status": getattr(status, "value", str(status)),
        "stage": (job.meta or {}).get("stage"),
        "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
        "ended_at": job.ended_at.isoformat() if job.ended_at else None,
        "result": None,
        "error": None,
    }
    if job.is_finished:
        out["result"] = job.return_value()
    elif job.is_failed:
        # exc_info holds a server-side traceback; only the last line is returned.
        tail = str(job.exc_info or "").strip().splitlines()
        out["error"] = tail[-1] if tail else "job failed"
    return out
