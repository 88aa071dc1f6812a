from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, time, timezone
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from branchlms.core.config import settings
from branchlms.core.errors import ContentIntegrityError, InputValidationError, NotFoundError
from branchlms.db.base import utcnow
from branchlms.db.site_scope import SiteScope, open_site_scope
from branchlms.models.certificate import Certificate, CertificateSignatory, CertificateType, Signatory
from branchlms.models.course import Course
from branchlms.models.site import Site
from branchlms.models.user import User


log = logging.getLogger(__name__)

CERTIFICATE_NUMBER_RE = re.compile(r"^[A-Z]+-\d{8}-\d{3,}$")


def format_certificate_number(prefix: str, issued_on: date, serial: int, width: int) -> str:
    return f"{prefix}-{issued_on.strftime('%Y%m%d')}-{str(int(serial)).zfill(int(width))}"


class CertificateIssuer:
    """Issues completion and recognition certificates for one site.

    Serials restart every day: the next serial is the number of certificates
    already carrying today's stem, plus one. Two concurrent issuers can compute
    the same number; the unique constraint on ``certificate_number`` rejects
    the loser, whose unit of work is then replayed by ``run_atomic``.
    """

    def __init__(self, scope: SiteScope, *, prefix: str | None = None, serial_width: int | None = None) -> None:
        self.scope = scope
        self.db = scope.db
        self.prefix = str(prefix or settings.certificate_prefix)
        self.serial_width = int(serial_width or settings.certificate_serial_width)

    def next_certificate_number(self, issued_on: date) -> str:
        stem = f"{self.prefix}-{issued_on.strftime('%Y%m%d')}-"
        count = self.db.scalar(
            select(func.count(Certificate.id)).where(Certificate.certificate_number.like(f"{stem}%"))
        )
        return format_certificate_number(self.prefix, issued_on, int(count or 0) + 1, self.serial_width)

    def find_completion_certificate(self, user_id: uuid.UUID, course_id: uuid.UUID) -> Certificate | None:
        return self.db.scalar(
            self.scope.certificates().where(
                Certificate.user_id == user_id,
                Certificate.course_id == course_id,
                Certificate.type == CertificateType.completion,
            )
        )

    def issue_completion_certificate(
        self,
        user_id: uuid.UUID,
        course_id: uuid.UUID,
        signatory_ids: Iterable[uuid.UUID] | None = None,
    ) -> Certificate:
        """Return the user's completion certificate for the course, issuing it if needed.

        With no explicit ``signatory_ids`` the course's configured signatories
        sign the certificate.
        """
        course = self.scope.require_course(course_id)
        if self.db.get(User, user_id) is None:
            raise NotFoundError("user not found", details={"user_id": str(user_id)})

        existing = self.find_completion_certificate(user_id, course.id)
        if existing is not None:
            return existing

        ids = list(signatory_ids) if signatory_ids is not None else self.scope.course_signatory_ids(course.id)
        signatories = self._resolve(ids, course_id=course.id)

        now = utcnow()
        cert = Certificate(
            site_id=course.site_id,
            user_id=user_id,
            course_id=course.id,
            type=CertificateType.completion,
            certificate_number=self.next_certificate_number(now.date()),
            completion_date=now,
        )
        self.db.add(cert)
        self.db.flush()
        self._attach_signatories(cert, signatories)

        log.info(
            "certificate issued type=completion number=%s user_id=%s course_id=%s site_id=%s",
            cert.certificate_number,
            user_id,
            course.id,
            cert.site_id,
        )
        return cert

    def issue_recognition_certificate(
        self,
        user_id: uuid.UUID,
        reason: str,
        signatory_ids: Iterable[uuid.UUID],
        awarded_on: date | None = None,
    ) -> Certificate:
        reason_s = str(reason or "").strip()
        if not reason_s:
            raise InputValidationError("reason is required")
        ids = list(signatory_ids or [])
        if not ids:
            raise InputValidationError("at least one signatory is required")

        user = self.scope.require_user(user_id)
        signatories = self._resolve(ids)

        day = awarded_on or utcnow().date()
        cert = Certificate(
            site_id=user.site_id,
            user_id=user.id,
            course_id=None,
            type=CertificateType.recognition,
            certificate_number=self.next_certificate_number(day),
            completion_date=datetime.combine(day, time.min, tzinfo=timezone.utc),
            reason=reason_s,
        )
        self.db.add(cert)
        self.db.flush()
        self._attach_signatories(cert, signatories)

        log.info(
            "certificate issued type=recognition number=%s user_id=%s site_id=%s",
            cert.certificate_number,
            user.id,
            cert.site_id,
        )
        return cert

    def _resolve(self, ids: list[uuid.UUID], *, course_id: uuid.UUID | None = None) -> list[Signatory]:
        try:
            return self.scope.resolve_signatories(ids, course_id=course_id)
        except NotFoundError as e:
            raise ContentIntegrityError(
                "certificate references an unknown signatory",
                status_code=400,
                details=e.details,
            ) from e

    def _attach_signatories(self, cert: Certificate, signatories: list[Signatory]) -> None:
        for s in signatories:
            self.db.add(
                CertificateSignatory(
                    certificate_id=cert.id,
                    signatory_id=s.id,
                    name=s.name,
                    position=s.position,
                    signature_image_path=s.signature_image_path,
                )
            )
        self.db.flush()


def certificate_site_id(db: Session, cert: Certificate) -> str | None:
    """Site a certificate belongs to: the course's site, or the holder's home site."""
    if cert.course_id is not None:
        course = db.get(Course, cert.course_id)
        return course.site_id if course is not None else None
    user = db.get(User, cert.user_id)
    return user.site_id if user is not None else None


def certificate_view(db: Session, cert: Certificate) -> dict:
    user = db.get(User, cert.user_id)
    course = db.get(Course, cert.course_id) if cert.course_id is not None else None
    site = db.get(Site, cert.site_id)
    signers = db.scalars(
        select(CertificateSignatory).where(CertificateSignatory.certificate_id == cert.id)
    ).all()
    return {
        "id": str(cert.id),
        "certificate_number": cert.certificate_number,
        "type": cert.type.value,
        "completion_date": cert.completion_date.isoformat() if cert.completion_date else None,
        "reason": cert.reason,
        "site_id": cert.site_id,
        "site_name": site.name if site is not None else None,
        "user": {
            "id": str(user.id) if user is not None else None,
            "name": user.name if user is not None else None,
            "full_name": user.display_name if user is not None else None,
        },
        "course": (
            {"id": str(course.id), "title": course.title, "venue": course.venue}
            if course is not None
            else None
        ),
        "signatories": [
            {"name": s.name, "position": s.position, "signature_image_path": s.signature_image_path}
            for s in signers
        ],
    }


def validate_certificate(db: Session, number: str, site_id: str | None) -> dict:
    """Public lookup by certificate number, restricted to the caller's site.

    A certificate that exists but belongs to another site is reported exactly
    like a missing one.
    """
    scope = open_site_scope(db, site_id)
    num = str(number or "").strip()
    if not num:
        raise InputValidationError("certificate number is required")

    cert = db.scalar(select(Certificate).where(Certificate.certificate_number == num))
    if cert is None or certificate_site_id(db, cert) != scope.site_id:
        if cert is not None:
            log.info("certificate lookup site mismatch number=%s requested_site=%s", num, scope.site_id)
        raise NotFoundError("certificate not found", details={"certificate_number": num})

    return certificate_view(db, cert)
