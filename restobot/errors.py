from __future__ import annotations


class PipelineError(Exception):
    """Base error for the query pipeline; ``code`` is safe to show to callers."""

    code = "INTERNAL"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.message = message or self.code


class ClassificationFailure(PipelineError):
    code = "CLASSIFICATION_FAILED"


class GenerationFailure(PipelineError):
    code = "GENERATION_FAILED"


class ResolutionFailure(PipelineError):
    code = "NOT_FOUND"


class AuthorizationFailure(PipelineError):
    code = "FORBIDDEN"


class ExecutionFailure(PipelineError):
    code = "EXECUTION_FAILED"


class SynthesisFailure(PipelineError):
    code = "SYNTHESIS_FAILED"


class ValidationFailure(PipelineError):
    code = "BAD_USER_INPUT"


class ConflictFailure(PipelineError):
    code = "CONFLICT"
