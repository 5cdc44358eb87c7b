from __future__ import annotations


class PipelineError(Exception):
    status_code = 500

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PipelineError):
    """A required request parameter is missing or malformed."""

    status_code = 400


class UpstreamUnavailable(PipelineError):
    """The generation service was unreachable, rate limited or timed out."""

    status_code = 503


class ExtractionFailure(PipelineError):
    """No structured value could be recovered from the generation output."""

    status_code = 502


class PersistenceFailure(PipelineError):
    status_code = 500
