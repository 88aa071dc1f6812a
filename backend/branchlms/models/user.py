import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from branchlms.db.base import Base, utcnow


class UserRole(str, enum.Enum):
    employee = "employee"
    admin = "admin"


class UserKind(str, enum.Enum):
    employee = "employee"
    external = "external"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id: Mapped[str] = mapped_column(String(64), ForeignKey("sites.id"), index=True)

    name: Mapped[str] = mapped_column(String(200), index=True)
    full_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    position: Mapped[str | None] = mapped_column(String(200), nullable=True)

    role: Mapped[UserRole] = mapped_column(Enum(UserRole), index=True)
    kind: Mapped[UserKind] = mapped_column(Enum(UserKind), default=UserKind.employee)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    password_hash: Mapped[str] = mapped_column(String(255))

    __table_args__ = (UniqueConstraint("site_id", "name", name="uq_users_site_name"),)

    @property
    def display_name(self) -> str:
        return self.full_name or self.name
