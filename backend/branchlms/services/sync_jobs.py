from __future__ import annotations

import logging
import uuid

from rq import get_current_job

from branchlms.core.config import settings
from branchlms.core.security_audit_log import audit_log
from branchlms.db import session as session_module
from branchlms.services.course_sync import CourseSyncEngine


log = logging.getLogger(__name__)


def _set_job_stage(stage: str, **meta) -> None:
    job = get_current_job()
    if job is None:
        return
    job.meta["stage"] = stage
    job.meta.update(meta)
    job.save_meta()


def sync_course_job(*, master_course_id: str, target_site_ids: list[str], actor_user_id: str | None = None) -> dict:
    """Background variant of course sync; the result is the sync report."""
    _set_job_stage("syncing", target_count=len(target_site_ids))

    db = session_module.SessionLocal()
    try:
        report = CourseSyncEngine(db).sync_course(uuid.UUID(str(master_course_id)), list(target_site_ids))
        out = report.as_dict()
        audit_log(
            db=db,
            request=None,
            event_type="admin_course_synced",
            site_id=settings.primary_site_id,
            actor_user_id=uuid.UUID(str(actor_user_id)) if actor_user_id else None,
            meta={**out, "job_id": getattr(get_current_job(), "id", None)},
        )
        db.commit()
    finally:
        db.close()

    _set_job_stage("done", status=out["status"])
    log.info(
        "sync_course_job finished master_course_id=%s status=%s succeeded=%s failed=%s",
        master_course_id,
        out["status"],
        len(out["succeeded"]),
        len(out["failed"]),
    )
    return out
