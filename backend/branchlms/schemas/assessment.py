from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class AnswersRequest(BaseModel):
    # question index -> selected option index
    answers: dict[int, int] = Field(default_factory=dict)


class SubmissionResponse(BaseModel):
    kind: str
    score: int
    total: int
    passed: bool | None = None
    passing_rate: int | None = None
    certificate_id: str | None = None
    retake_required: bool = False
    attempts_used: int | None = None
    max_attempts: int | None = None
    correct_indices: list[int] | None = None
    next_lesson_id: str | None = None
    course_complete: bool = False


class LessonCompleteResponse(BaseModel):
    course_complete: bool
    next_lesson_id: str | None = None
    certificate_id: str | None = None


class ProctoringEventRequest(BaseModel):
    event: Literal["failed"]
    reasons: list[str] = Field(default_factory=list, max_length=10)


class RetakeResponse(BaseModel):
    ok: bool = True
    progress_rows_cleared: int
    attempts_cleared: int
