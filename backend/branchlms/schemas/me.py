from __future__ import annotations

from pydantic import BaseModel


class CertificateItem(BaseModel):
    id: str
    certificate_number: str
    type: str
    completion_date: str | None
    course_id: str | None
    course_title: str | None
    reason: str | None = None


class MyCertificatesResponse(BaseModel):
    items: list[CertificateItem]


class EnrollmentItem(BaseModel):
    course_id: str
    course_title: str
    enrolled_at: str | None
    completed_lessons: int
    total_lessons: int


class MyEnrollmentsResponse(BaseModel):
    items: list[EnrollmentItem]


class PaymentItem(BaseModel):
    id: str
    course_id: str
    amount: float
    currency: str
    status: str
    created_at: str | None


class MyPaymentsResponse(BaseModel):
    items: list[PaymentItem]
