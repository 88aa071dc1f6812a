from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from branchlms.schemas.content import ModuleBody, QuizQuestion


class PreTestBody(BaseModel):
    questions: list[QuizQuestion] = Field(min_length=1)
    passing_rate: int | None = Field(default=None, ge=0, le=100)


class FinalAssessmentBody(BaseModel):
    questions: list[QuizQuestion] = Field(min_length=1)
    passing_rate: int | None = Field(default=None, ge=0, le=100)
    max_attempts: int | None = Field(default=None, ge=1)


class CourseWriteRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    description: str = ""
    category: str | None = None
    image_path: str | None = None
    venue: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_internal: bool = True
    is_public: bool = False
    price: float | None = Field(default=None, ge=0)

    pre_test: PreTestBody | None = None
    final_assessment: FinalAssessmentBody | None = None

    modules: list[ModuleBody] = Field(default_factory=list)
    signatory_ids: list[uuid.UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def _dates_in_order(self) -> "CourseWriteRequest":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class CourseWriteResponse(BaseModel):
    id: str
    title: str
    site_id: str


class CourseListItem(BaseModel):
    id: str
    title: str
    category: str | None
    is_internal: bool
    is_public: bool
    price: float | None
    has_pre_test: bool
    has_final_assessment: bool


class CourseListResponse(BaseModel):
    items: list[CourseListItem]
