"""
Exceptions raised by the exam pipeline.
Routers map these onto HTTP status codes; everything else is absorbed
inside the pipeline by omitting what could not be resolved.
"""


class AssessmentError(Exception):
    """Base class for pipeline errors."""


class ExamNotFound(AssessmentError):
    """No exam instance exists for the requested exam id."""

    def __init__(self, exam_id: str):
        super().__init__(f"exam not found: {exam_id}")
        self.exam_id = exam_id


class ExamExpired(AssessmentError):
    """The exam instance passed its expiry before the submission arrived."""

    def __init__(self, exam_id: str):
        super().__init__(f"exam expired: {exam_id}")
        self.exam_id = exam_id


class MalformedInput(AssessmentError):
    """The caller sent something the pipeline cannot act on (e.g. no answers)."""


class StorageDegraded(AssessmentError):
    """A question source could not be read."""

    def __init__(self, source: str, cause: Exception = None):
        super().__init__(f"{source} unavailable: {cause}")
        self.source = source
        self.cause = cause
