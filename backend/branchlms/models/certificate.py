import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from branchlms.db.base import Base, utcnow


class CertificateType(str, enum.Enum):
    completion = "completion"
    recognition = "recognition"


class Signatory(Base):
    __tablename__ = "signatories"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # NULL site_id: global signatory visible to every site.
    site_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("sites.id"), nullable=True, index=True)

    name: Mapped[str] = mapped_column(String(200))
    position: Mapped[str] = mapped_column(String(200))
    signature_image_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Certificate(Base):
    __tablename__ = "certificates"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id: Mapped[str] = mapped_column(String(64), ForeignKey("sites.id"), index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), index=True)
    course_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("courses.id"), nullable=True, index=True)

    type: Mapped[CertificateType] = mapped_column(Enum(CertificateType), index=True)
    certificate_number: Mapped[str] = mapped_column(String(64))
    completion_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("certificate_number", name="uq_certificates_certificate_number"),)


class CertificateSignatory(Base):
    """Signer as it stood when the certificate was issued."""

    __tablename__ = "certificate_signatories"

    certificate_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("certificates.id"), primary_key=True)
    # Not a foreign key: the snapshot outlives a deleted signatory.
    signatory_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)

    name: Mapped[str] = mapped_column(String(200))
    position: Mapped[str] = mapped_column(String(200))
    signature_image_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
