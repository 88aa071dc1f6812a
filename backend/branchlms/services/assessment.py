from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Mapping

from sqlalchemy import func, select

from branchlms.core.config import settings
from branchlms.core.errors import ConflictError, InputValidationError, NotFoundError
from branchlms.db.site_scope import SiteScope
from branchlms.models.attempt import FinalAssessmentAttempt, PreTestAttempt, QuizAttempt
from branchlms.models.course import Course, LessonType
from branchlms.models.user import User
from branchlms.schemas.content import QuizQuestion, decode_questions, public_questions
from branchlms.services.certificates import CertificateIssuer
from branchlms.services.enrollment import ensure_course_access
from branchlms.services.progress import ProgressTracker
from branchlms.services.retraining import RetrainingEngine


log = logging.getLogger(__name__)


class AssessmentKind(str, enum.Enum):
    pre_test = "pre_test"
    lesson_quiz = "lesson_quiz"
    final = "final"


@dataclass(frozen=True)
class AssessmentRef:
    course_id: uuid.UUID
    kind: AssessmentKind
    lesson_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ScoreResult:
    score: int
    total: int
    correct_indices: list[int] = field(default_factory=list)

    @property
    def percentage(self) -> float:
        return (self.score / self.total) * 100 if self.total else 0.0

    def passes(self, passing_rate: int) -> bool:
        return self.total > 0 and self.percentage >= float(passing_rate)


@dataclass
class SubmissionResult:
    kind: AssessmentKind
    score: int
    total: int
    passed: bool | None = None
    passing_rate: int | None = None
    certificate_id: uuid.UUID | None = None
    retake_required: bool = False
    attempts_used: int | None = None
    max_attempts: int | None = None
    correct_indices: list[int] | None = None
    next_lesson_id: uuid.UUID | None = None
    course_complete: bool = False

    def as_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "score": self.score,
            "total": self.total,
            "passed": self.passed,
            "passing_rate": self.passing_rate,
            "certificate_id": str(self.certificate_id) if self.certificate_id else None,
            "retake_required": self.retake_required,
            "attempts_used": self.attempts_used,
            "max_attempts": self.max_attempts,
            "correct_indices": self.correct_indices,
            "next_lesson_id": str(self.next_lesson_id) if self.next_lesson_id else None,
            "course_complete": self.course_complete,
        }


def score_submission(questions: list[QuizQuestion], answers: Mapping[int, int]) -> ScoreResult:
    """Count answers matching each question's correct option.

    Unanswered questions count as wrong; indices outside the question list
    are ignored.
    """
    correct = [q.correct_index for q in questions]
    score = 0
    for i, expected in enumerate(correct):
        picked = answers.get(i)
        if picked is not None and int(picked) == expected:
            score += 1
    return ScoreResult(score=score, total=len(questions), correct_indices=correct)


def _clean_answers(answers: Mapping[int, int] | None) -> dict[int, int]:
    out: dict[int, int] = {}
    for k, v in dict(answers or {}).items():
        try:
            out[int(k)] = int(v)
        except (TypeError, ValueError) as e:
            raise InputValidationError("answers must map question index to option index") from e
    return out


class AssessmentEngine:
    def __init__(
        self,
        scope: SiteScope,
        *,
        issuer: CertificateIssuer | None = None,
        progress: ProgressTracker | None = None,
        retraining: RetrainingEngine | None = None,
    ) -> None:
        self.scope = scope
        self.db = scope.db
        self.issuer = issuer or CertificateIssuer(scope)
        self.progress = progress or ProgressTracker(scope, issuer=self.issuer)
        self.retraining = retraining or RetrainingEngine(scope, progress=self.progress)

    # reading

    def questions_for(self, ref: AssessmentRef) -> list[QuizQuestion]:
        course = self.scope.require_course(ref.course_id)
        if ref.kind == AssessmentKind.pre_test:
            questions = decode_questions(course.pre_test_content)
        elif ref.kind == AssessmentKind.final:
            questions = decode_questions(course.final_assessment_content)
        else:
            if ref.lesson_id is None:
                raise InputValidationError("lesson id is required for a lesson quiz")
            lesson = self.scope.require_lesson(course.id, ref.lesson_id)
            if lesson.type != LessonType.quiz:
                raise InputValidationError("lesson is not a quiz", details={"lesson_id": str(lesson.id)})
            questions = decode_questions(lesson.content)

        if not questions:
            raise NotFoundError(f"{ref.kind.value.replace('_', ' ')} not found for this course")
        return questions

    def pre_test_status(self, user: User, course_id: uuid.UUID) -> dict:
        course = self.scope.require_course(course_id)
        ensure_course_access(self.scope, user, course.id)
        prior = self._pre_test_attempt(user.id, course.id)
        if prior is not None:
            return {
                "course_id": str(course.id),
                "already_taken": True,
                "score": prior.score,
                "total": prior.total_questions,
                "passed": prior.passed,
                "questions": [],
            }
        questions = self.questions_for(AssessmentRef(course.id, AssessmentKind.pre_test))
        return {
            "course_id": str(course.id),
            "already_taken": False,
            "passing_rate": self._pre_test_rate(course),
            "questions": [q.model_dump() for q in public_questions(questions)],
        }

    def final_status(self, user: User, course_id: uuid.UUID) -> dict:
        course = self.scope.require_course(course_id)
        ensure_course_access(self.scope, user, course.id)
        used = self.final_attempt_count(user.id, course.id)
        limit = self._final_max_attempts(course)
        questions = self.questions_for(AssessmentRef(course.id, AssessmentKind.final))
        return {
            "course_id": str(course.id),
            "passing_rate": self._final_rate(course),
            "attempts_used": used,
            "max_attempts": limit,
            "attempts_remaining": max(0, limit - used),
            "lessons_complete": self.progress.is_course_complete(user.id, course.id),
            "questions": [q.model_dump() for q in public_questions(questions)],
        }

    def ensure_final_available(self, user: User, course_id: uuid.UUID) -> Course:
        course = self.scope.require_course(course_id)
        ensure_course_access(self.scope, user, course.id)
        if not course.has_final_assessment:
            raise NotFoundError("final assessment not found for this course")
        used = self.final_attempt_count(user.id, course.id)
        limit = self._final_max_attempts(course)
        if used >= limit:
            raise ConflictError(
                "maximum final assessment attempts reached",
                status_code=403,
                error_code="attempts_exhausted",
                details={"attempts_used": used, "max_attempts": limit},
            )
        return course

    def final_attempt_count(self, user_id: uuid.UUID, course_id: uuid.UUID) -> int:
        return int(
            self.db.scalar(
                select(func.count(FinalAssessmentAttempt.id)).where(
                    FinalAssessmentAttempt.site_id == self.scope.site_id,
                    FinalAssessmentAttempt.user_id == user_id,
                    FinalAssessmentAttempt.course_id == course_id,
                )
            )
            or 0
        )

    # submitting

    def submit(self, ref: AssessmentRef, user: User, answers: Mapping[int, int] | None) -> SubmissionResult:
        picked = _clean_answers(answers)
        if ref.kind == AssessmentKind.pre_test:
            return self._submit_pre_test(ref, user, picked)
        if ref.kind == AssessmentKind.final:
            return self._submit_final(ref, user, picked)
        return self._submit_lesson_quiz(ref, user, picked)

    def _submit_pre_test(self, ref: AssessmentRef, user: User, answers: dict[int, int]) -> SubmissionResult:
        course = self.scope.require_course(ref.course_id)
        ensure_course_access(self.scope, user, course.id)

        if self._pre_test_attempt(user.id, course.id) is not None:
            raise ConflictError(
                "you have already attempted this pre-test",
                status_code=403,
                error_code="pre_test_taken",
            )

        questions = self.questions_for(ref)
        result = score_submission(questions, answers)
        rate = self._pre_test_rate(course)
        passed = result.passes(rate)

        self.db.add(
            PreTestAttempt(
                site_id=self.scope.site_id,
                user_id=user.id,
                course_id=course.id,
                score=result.score,
                total_questions=result.total,
                passed=passed,
            )
        )
        self.db.flush()
        log.info("pre-test submitted user_id=%s course_id=%s score=%s/%s", user.id, course.id, result.score, result.total)
        return SubmissionResult(
            kind=ref.kind, score=result.score, total=result.total, passed=passed, passing_rate=rate
        )

    def _submit_lesson_quiz(self, ref: AssessmentRef, user: User, answers: dict[int, int]) -> SubmissionResult:
        course = self.scope.require_course(ref.course_id)
        ensure_course_access(self.scope, user, course.id)

        questions = self.questions_for(ref)
        result = score_submission(questions, answers)
        # Lesson quizzes only pass with every answer right.
        passed = result.passes(100)

        self.db.add(
            QuizAttempt(
                site_id=self.scope.site_id,
                user_id=user.id,
                course_id=course.id,
                lesson_id=ref.lesson_id,
                score=result.score,
                total_questions=result.total,
            )
        )
        self.db.flush()

        out = SubmissionResult(
            kind=ref.kind,
            score=result.score,
            total=result.total,
            passed=passed,
            passing_rate=100,
            correct_indices=[i for i, c in enumerate(result.correct_indices) if answers.get(i) == c],
        )
        if not passed:
            return out

        self.progress.mark_complete(user.id, ref.lesson_id)
        outcome = self.progress.after_lesson(user, course.id, ref.lesson_id)
        out.certificate_id = outcome.certificate_id
        out.next_lesson_id = outcome.next_lesson_id
        out.course_complete = outcome.course_complete
        return out

    def _submit_final(self, ref: AssessmentRef, user: User, answers: dict[int, int]) -> SubmissionResult:
        course = self.ensure_final_available(user, ref.course_id)
        used = self.final_attempt_count(user.id, course.id)
        limit = self._final_max_attempts(course)

        questions = self.questions_for(ref)
        result = score_submission(questions, answers)
        rate = self._final_rate(course)
        passed = result.passes(rate)

        self.db.add(
            FinalAssessmentAttempt(
                site_id=self.scope.site_id,
                user_id=user.id,
                course_id=course.id,
                score=result.score,
                total_questions=result.total,
                passed=passed,
            )
        )
        self.db.flush()
        used += 1

        out = SubmissionResult(
            kind=ref.kind,
            score=result.score,
            total=result.total,
            passed=passed,
            passing_rate=rate,
            attempts_used=used,
            max_attempts=limit,
        )

        if passed:
            cert = self.issuer.issue_completion_certificate(user.id, course.id)
            out.certificate_id = cert.id
            out.course_complete = True
        elif used >= limit:
            self.retraining.reset_user(user.id, course.id)
            out.retake_required = True

        log.info(
            "final assessment submitted user_id=%s course_id=%s score=%s/%s passed=%s attempt=%s/%s",
            user.id,
            course.id,
            result.score,
            result.total,
            passed,
            used,
            limit,
        )
        return out

    # helpers

    def _pre_test_attempt(self, user_id: uuid.UUID, course_id: uuid.UUID) -> PreTestAttempt | None:
        return self.db.scalar(
            select(PreTestAttempt).where(
                PreTestAttempt.site_id == self.scope.site_id,
                PreTestAttempt.user_id == user_id,
                PreTestAttempt.course_id == course_id,
            )
        )

    @staticmethod
    def _pre_test_rate(course: Course) -> int:
        v = course.pre_test_passing_rate
        return int(v) if v is not None else int(settings.default_pre_test_passing_rate)

    @staticmethod
    def _final_rate(course: Course) -> int:
        v = course.final_assessment_passing_rate
        return int(v) if v is not None else int(settings.default_final_passing_rate)

    @staticmethod
    def _final_max_attempts(course: Course) -> int:
        v = course.final_assessment_max_attempts
        return max(1, int(v)) if v is not None else int(settings.default_final_max_attempts)
