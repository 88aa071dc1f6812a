from __future__ import annotations

import base64
import logging
import uuid
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from branchlms.core.config import settings
from branchlms.core.errors import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    InputValidationError,
    NotFoundError,
)
from branchlms.db.base import utcnow
from branchlms.db.site_scope import SiteScope, open_site_scope
from branchlms.models.enrollment import Transaction, TransactionStatus
from branchlms.models.user import User, UserKind
from branchlms.services.enrollment import enroll, unenroll


log = logging.getLogger(__name__)

PAYMENT_METHOD_TYPES = ["card", "gcash", "paymaya", "grab_pay"]


def _headers() -> dict[str, str]:
    key = str(settings.paymongo_secret_key or "").strip()
    if not key:
        raise GatewayError("payment gateway is not configured", status_code=503, error_code="gateway_not_configured")
    token = base64.b64encode(f"{key}:".encode("utf-8")).decode("ascii")
    return {
        "accept": "application/json",
        "content-type": "application/json",
        "authorization": f"Basic {token}",
    }


def _gateway_error_detail(data: Any, status: int | None) -> str:
    if isinstance(data, dict):
        errors = data.get("errors") or []
        if errors and isinstance(errors[0], dict):
            return str(errors[0].get("detail") or errors[0].get("code") or "gateway error")
    return f"HTTP {status}" if status else "gateway error"


def _call(method: str, path: str, payload: dict | None = None) -> dict:
    url = f"{str(settings.paymongo_base_url).rstrip('/')}/{path.lstrip('/')}"
    headers = _headers()
    timeout = httpx.Timeout(float(settings.payment_timeout_seconds), connect=5.0)
    try:
        with httpx.Client(timeout=timeout) as client:
            if method == "POST":
                r = client.post(url, json=payload, headers=headers)
            else:
                r = client.get(url, headers=headers)
            data = r.json()
    except (httpx.HTTPError, ValueError) as e:
        log.warning("paymongo request failed method=%s path=%s: %s", method, path, type(e).__name__)
        raise GatewayError("could not reach the payment gateway", details=type(e).__name__) from e

    status = int(getattr(r, "status_code", 200) or 200)
    if status >= 400 or (isinstance(data, dict) and data.get("errors")):
        detail = _gateway_error_detail(data, status)
        log.warning("paymongo error method=%s path=%s status=%s detail=%s", method, path, status, detail)
        raise GatewayError("payment gateway rejected the request", details=detail)
    if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
        raise GatewayError("invalid response from payment gateway")
    return data["data"]


def create_checkout_session(
    *,
    amount: float,
    name: str,
    description: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> dict:
    payload = {
        "data": {
            "attributes": {
                "line_items": [
                    {
                        "currency": str(settings.payment_currency),
                        "amount": int(round(float(amount) * 100)),
                        "name": name,
                        "quantity": 1,
                    }
                ],
                "payment_method_types": PAYMENT_METHOD_TYPES,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "description": description,
                "metadata": metadata,
            }
        }
    }
    return _call("POST", "/checkout_sessions", payload)


def fetch_checkout_session(session_id: str) -> dict:
    return _call("GET", f"/checkout_sessions/{session_id}")


def _is_paid(attributes: dict) -> bool:
    for p in attributes.get("payments") or []:
        status = (((p or {}).get("data") or {}).get("attributes") or {}).get("status")
        if status is None:
            status = ((p or {}).get("attributes") or {}).get("status")
        if status == "paid":
            return True
    return False


class PurchaseService:
    """Paid enrollment for external users, backed by PayMongo checkout sessions."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def start_checkout(self, user: User, site_id: str, course_id: uuid.UUID) -> dict:
        if user.kind != UserKind.external or site_id != settings.external_site_id:
            raise AuthorizationError("purchases are for external users only")
        if not str(settings.app_public_url or "").strip():
            raise GatewayError("payment gateway is not configured", status_code=503, error_code="gateway_not_configured")

        scope = open_site_scope(self.db, site_id)
        course = scope.require_course(course_id)
        if not course.is_public:
            raise NotFoundError("paid course not found")
        if not course.price or float(course.price) <= 0:
            raise InputValidationError("this is not a paid course")
        if scope.is_enrolled(user.id, course.id):
            raise ConflictError("you are already enrolled in this course")

        base = str(settings.app_public_url).rstrip("/")
        session = create_checkout_session(
            amount=float(course.price),
            name=course.title,
            description=f"Payment for course: {course.title}",
            success_url=f"{base}/courses/{course.id}/purchase-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/courses/{course.id}",
            metadata={"userId": str(user.id), "courseId": str(course.id), "siteId": scope.site_id},
        )
        session_id = str(session.get("id") or "")
        checkout_url = ((session.get("attributes") or {}).get("checkout_url")) or None
        if not session_id or not checkout_url:
            raise GatewayError("invalid response from payment gateway")

        self.db.add(
            Transaction(
                site_id=scope.site_id,
                user_id=user.id,
                course_id=course.id,
                amount=float(course.price),
                currency=str(settings.payment_currency),
                status=TransactionStatus.pending,
                gateway="paymongo",
                gateway_transaction_id=session_id,
            )
        )
        self.db.flush()
        log.info("checkout started user_id=%s course_id=%s session_id=%s", user.id, course.id, session_id)
        return {"checkout_url": checkout_url, "checkout_session_id": session_id}

    def verify(self, checkout_session_id: str) -> dict:
        """Settle a checkout session: mark the transaction and enroll the buyer.

        Safe to call repeatedly for the same session.
        """
        sid = str(checkout_session_id or "").strip()
        if not sid:
            raise InputValidationError("missing checkout session id")

        session = fetch_checkout_session(sid)
        attributes = session.get("attributes") or {}
        tx = self.db.scalar(select(Transaction).where(Transaction.gateway_transaction_id == sid))

        if not _is_paid(attributes):
            if tx is not None and tx.status == TransactionStatus.pending:
                tx.status = TransactionStatus.failed
                tx.updated_at = utcnow()
                self.db.flush()
            return {"paid": False, "transaction_status": tx.status.value if tx is not None else None}

        # A session we recorded must describe the same purchase as its transaction.
        site_id = tx.site_id if tx is not None else settings.external_site_id
        meta = attributes.get("metadata") or {}
        if meta.get("siteId") != site_id or not meta.get("userId") or not meta.get("courseId"):
            raise GatewayError("payment session metadata is invalid or missing")
        try:
            user_id = uuid.UUID(str(meta["userId"]))
            course_id = uuid.UUID(str(meta["courseId"]))
        except ValueError as e:
            raise GatewayError("payment session metadata is invalid or missing") from e
        if tx is not None and (tx.user_id != user_id or tx.course_id != course_id):
            log.warning("payment session metadata mismatch session_id=%s transaction_id=%s", sid, tx.id)
            raise GatewayError("payment session does not match its transaction")
        if tx is not None and tx.status == TransactionStatus.rejected:
            raise ConflictError(
                "this transaction was rejected by an administrator",
                error_code="transaction_rejected",
                details={"transaction_id": str(tx.id)},
            )

        scope = SiteScope(site_id=site_id, db=self.db)
        if tx is not None:
            tx.status = TransactionStatus.completed
            tx.updated_at = utcnow()
        created = enroll(scope, user_id, course_id)
        self.db.flush()

        log.info("payment verified session_id=%s user_id=%s course_id=%s enrolled=%s", sid, user_id, course_id, created)
        return {
            "paid": True,
            "transaction_status": TransactionStatus.completed.value,
            "enrolled": True,
            "message": "user enrolled successfully" if created else "already enrolled",
            "user_id": str(user_id),
            "course_id": str(course_id),
        }

    def review(
        self,
        transaction_id: uuid.UUID,
        status: TransactionStatus,
        rejection_reason: str | None = None,
    ) -> Transaction:
        """Settle a pending transaction by hand.

        Approving enrolls the buyer. Rejecting needs a reason and removes the
        enrollment, which also ends the access a pending transaction grants.
        """
        if status not in (TransactionStatus.completed, TransactionStatus.rejected):
            raise InputValidationError("status must be completed or rejected")

        tx = self.db.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.site_id == settings.external_site_id,
            )
        )
        if tx is None:
            raise NotFoundError("transaction not found", details={"transaction_id": str(transaction_id)})
        if tx.status != TransactionStatus.pending:
            raise ConflictError(
                "this transaction has already been processed",
                error_code="transaction_processed",
                details={"status": tx.status.value},
            )

        scope = SiteScope(site_id=tx.site_id, db=self.db)
        if status == TransactionStatus.completed:
            tx.status = TransactionStatus.completed
            enroll(scope, tx.user_id, tx.course_id)
        else:
            reason = str(rejection_reason or "").strip()
            if not reason:
                raise InputValidationError("rejection reason is required")
            tx.status = TransactionStatus.rejected
            tx.rejection_reason = reason
            if not unenroll(scope, tx.user_id, tx.course_id):
                log.info("no enrollment to remove transaction_id=%s", tx.id)
        tx.updated_at = utcnow()
        self.db.flush()

        log.info("transaction reviewed transaction_id=%s status=%s", tx.id, tx.status.value)
        return tx
