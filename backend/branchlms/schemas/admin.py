from __future__ import annotations

import uuid
from datetime import date
from typing import Literal

from pydantic import BaseModel, Field

from branchlms.models.user import UserKind, UserRole


class SyncRequest(BaseModel):
    target_site_ids: list[str] = Field(min_length=1)


class SyncEnqueueResponse(BaseModel):
    ok: bool = True
    job_id: str


class RetrainingRequest(BaseModel):
    # Super admins may retrain a branch copy, addressed by site and title.
    target_site_id: str | None = None
    course_title: str | None = None


class EnrollmentRequest(BaseModel):
    user_id: uuid.UUID
    course_id: uuid.UUID


class BulkEnrollmentRequest(BaseModel):
    course_id: uuid.UUID
    user_ids: list[uuid.UUID] = Field(min_length=1, max_length=1000)


class SignatoryCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    position: str = Field(min_length=1, max_length=200)
    signature_image_path: str | None = None
    is_global: bool = False


class SignatoryItem(BaseModel):
    id: str
    name: str
    position: str
    signature_image_path: str | None
    site_id: str | None


class SignatoriesResponse(BaseModel):
    items: list[SignatoryItem]


class SiteCreateRequest(BaseModel):
    id: str = Field(min_length=2, max_length=64, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    name: str = Field(min_length=1, max_length=200)


class UserCreateRequest(BaseModel):
    name: str = Field(min_length=3, max_length=200)
    full_name: str | None = None
    position: str | None = None
    role: UserRole = UserRole.employee
    kind: UserKind = UserKind.employee
    password: str


class UserItem(BaseModel):
    id: str
    name: str
    full_name: str | None
    position: str | None
    role: str
    kind: str
    site_id: str


class UsersResponse(BaseModel):
    items: list[UserItem]


class RecognitionCertificateRequest(BaseModel):
    user_id: uuid.UUID
    reason: str = Field(min_length=10, max_length=2000)
    signatory_ids: list[uuid.UUID] = Field(min_length=1)
    awarded_on: date | None = None
    # Super admins may award to a user of another site.
    site_id: str | None = None


class CertificateIssuedResponse(BaseModel):
    id: str
    certificate_number: str


class PaymentReviewRequest(BaseModel):
    transaction_id: uuid.UUID
    status: Literal["completed", "rejected"]
    rejection_reason: str | None = Field(default=None, max_length=2000)
