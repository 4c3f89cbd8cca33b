from __future__ import annotations


class PipelineError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ToolError(RuntimeError):
    """Raised when a registered tool rejects its input or produces invalid output."""


class ResponseParseError(ValueError):
    """Model output could not be parsed into the expected schema."""


class BatchCancelled(Exception):
    """The batch was cancelled before this item's next upstream call started."""
