from branchlms.models.site import Site
from branchlms.models.user import User, UserKind, UserRole
from branchlms.models.course import Course, CourseSignatory, Lesson, LessonType, Module
from branchlms.models.enrollment import Enrollment, Transaction, TransactionStatus
from branchlms.models.progress import UserProgress
from branchlms.models.attempt import FinalAssessmentAttempt, PreTestAttempt, QuizAttempt
from branchlms.models.certificate import Certificate, CertificateSignatory, CertificateType, Signatory
from branchlms.models.security_audit import SecurityAuditEvent

__all__ = [
    "Site",
    "User",
    "UserKind",
    "UserRole",
    "Course",
    "CourseSignatory",
    "Lesson",
    "LessonType",
    "Module",
    "Enrollment",
    "Transaction",
    "TransactionStatus",
    "UserProgress",
    "QuizAttempt",
    "PreTestAttempt",
    "FinalAssessmentAttempt",
    "Certificate",
    "CertificateSignatory",
    "CertificateType",
    "Signatory",
    "SecurityAuditEvent",
]
