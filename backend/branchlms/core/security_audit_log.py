from __future__ import annotations

import json

from fastapi import Request
from sqlalchemy.orm import Session

from branchlms.core.rate_limit import client_ip
from branchlms.models.security_audit import SecurityAuditEvent


def _request_id(request: Request) -> str | None:
    rid = getattr(getattr(request, "state", None), "request_id", None)
    rid = str(rid or "").strip()
    return rid or None


def audit_log(
    *,
    db: Session,
    request: Request | None,
    event_type: str,
    site_id: str | None = None,
    actor_user_id=None,
    target_user_id=None,
    meta: dict | str | None = None,
) -> None:
    """Stage an audit row; it commits with the caller's unit of work."""
    if isinstance(meta, dict):
        meta_str = json.dumps(meta, ensure_ascii=False, default=str)
    elif isinstance(meta, str):
        meta_str = meta
    else:
        meta_str = None

    db.add(
        SecurityAuditEvent(
            site_id=site_id,
            actor_user_id=actor_user_id,
            target_user_id=target_user_id,
            event_type=str(event_type),
            meta=meta_str,
            request_id=_request_id(request) if request is not None else None,
            ip=client_ip(request) if request is not None else None,
        )
    )
