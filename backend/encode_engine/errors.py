from typing import Optional


class EncoderError(Exception):
    """Base class for job failures that are reported to the caller."""

    category = "encoder_error"
    http_status = 500

    def __init__(self, message: str, *, diagnostics: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics

    def to_dict(self) -> dict:
        payload = {"error": self.category, "detail": self.message}
        if self.diagnostics:
            payload["diagnostics"] = self.diagnostics
        return payload


class ValidationError(EncoderError, ValueError):
    """Bad or out-of-range request parameters. Raised before anything touches disk."""

    category = "validation_error"
    http_status = 400


class UnknownOperation(EncoderError):
    category = "unknown_operation"
    http_status = 404


class AllocationError(EncoderError):
    """The job's workspace could not be created (permissions, disk full)."""

    category = "allocation_error"
    http_status = 507


class StepError(EncoderError, RuntimeError):
    """An encoder invocation exited non-zero or did not produce its declared output."""

    category = "step_error"
    http_status = 500

    def __init__(self, message: str, *, step: str = "", returncode: Optional[int] = None,
                 diagnostics: Optional[str] = None):
        super().__init__(message, diagnostics=diagnostics)
        self.step = step
        self.returncode = returncode


class StepTimeout(StepError):
    category = "step_timeout"
    http_status = 504
