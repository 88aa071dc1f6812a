"""Stored question lists and lesson bodies.

Quiz-type content is persisted as JSON text. Decoding happens here and only
here, so a malformed row surfaces as a ContentIntegrityError instead of
leaking into scoring.
"""

from __future__ import annotations

import json
import uuid
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from branchlms.core.errors import ContentIntegrityError


class QuizOption(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(min_length=1)
    is_correct: bool = Field(default=False, alias="isCorrect")


class QuizQuestion(BaseModel):
    text: str = Field(min_length=1)
    options: list[QuizOption] = Field(min_length=2)

    @model_validator(mode="after")
    def _exactly_one_correct(self) -> "QuizQuestion":
        n = sum(1 for o in self.options if o.is_correct)
        if n != 1:
            raise ValueError(f"question must have exactly one correct option (found {n})")
        return self

    @property
    def correct_index(self) -> int:
        for i, o in enumerate(self.options):
            if o.is_correct:
                return i
        raise ContentIntegrityError("question has no correct option")


class QuestionPublic(BaseModel):
    """Question as shown to a learner: no answer key."""

    text: str
    options: list[str]


_questions_adapter = TypeAdapter(list[QuizQuestion])


def decode_questions(raw: str | None) -> list[QuizQuestion]:
    if raw is None or not str(raw).strip():
        return []
    try:
        return _questions_adapter.validate_json(raw)
    except ValidationError as e:
        raise ContentIntegrityError(
            "stored question content is invalid",
            details=[{"loc": list(err.get("loc") or ()), "msg": err.get("msg")} for err in e.errors()],
        ) from e


def encode_questions(questions: list[QuizQuestion]) -> str:
    return json.dumps([q.model_dump(by_alias=True) for q in questions], ensure_ascii=False)


def public_questions(questions: list[QuizQuestion]) -> list[QuestionPublic]:
    return [QuestionPublic(text=q.text, options=[o.text for o in q.options]) for q in questions]


class VideoLesson(BaseModel):
    type: Literal["video"] = "video"
    id: uuid.UUID | None = None
    title: str = Field(min_length=1)
    url: str | None = None
    image_path: str | None = None


class DocumentLesson(BaseModel):
    type: Literal["document"] = "document"
    id: uuid.UUID | None = None
    title: str = Field(min_length=1)
    content: str = ""
    document_path: str | None = None
    image_path: str | None = None


class QuizLesson(BaseModel):
    type: Literal["quiz"] = "quiz"
    id: uuid.UUID | None = None
    title: str = Field(min_length=1)
    questions: list[QuizQuestion] = Field(min_length=1)


LessonBody = Annotated[Union[VideoLesson, DocumentLesson, QuizLesson], Field(discriminator="type")]


class ModuleBody(BaseModel):
    id: uuid.UUID | None = None
    title: str = Field(min_length=1)
    lessons: list[LessonBody] = Field(default_factory=list)
