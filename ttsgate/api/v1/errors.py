"""Translation of pipeline errors into HTTP responses."""

from fastapi import HTTPException

from ttsgate.errors import SynthesisPipelineError


def to_http_exception(error: SynthesisPipelineError) -> HTTPException:
    """HTTPException carrying the error's status and structured detail."""
    return HTTPException(status_code=error.status_code, detail=error.to_detail())
