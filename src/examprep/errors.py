from typing import Optional


class ExamPrepError(Exception):
    """Base class for engine errors. `reason` is a stable machine-readable code."""

    reason: str = "error"
    status_code: int = 400

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason

    def to_dict(self):
        return {"error": self.message, "reason": self.reason}


class ConfigurationFault(ExamPrepError):
    """No duration rule applies, not even the exam-type default."""

    reason = "configuration_fault"
    status_code = 503


class NoQuestionsAvailable(ExamPrepError):
    reason = "no_questions"
    status_code = 404


class TransientPersistenceFailure(ExamPrepError):
    reason = "persistence_unavailable"
    status_code = 503


class ConflictingSession(ExamPrepError):
    """Another context already holds the snapshot for this session."""

    reason = "conflicting_session"
    status_code = 409

    def __init__(self, message: str, session_id: str, holder_context: Optional[str]):
        super().__init__(message)
        self.session_id = session_id
        self.holder_context = holder_context

    def to_dict(self):
        data = super().to_dict()
        data["session_id"] = self.session_id
        return data


class InvalidTransition(ExamPrepError):
    reason = "invalid_transition"
    status_code = 409


class SessionNotFound(ExamPrepError):
    reason = "session_not_found"
    status_code = 404


class RuleViolation(ExamPrepError):
    reason = "rule_violation"
    status_code = 400
