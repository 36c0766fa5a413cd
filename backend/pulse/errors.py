"""
Error taxonomy shared by the collection and analysis engines.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors raised inside the processing pipeline."""


class InvalidInput(PipelineError):
    """Malformed or unsupported input. Fatal to the unit, never retried."""


class UpstreamEmpty(PipelineError):
    """The upstream source has no data (private or empty). Terminal success."""


class UpstreamError(PipelineError):
    """Timeout, failure or rate limit from an external collaborator."""


class ValidationError(PipelineError):
    """Classifier output without a usable structure.

    Raised only inside the decoders, which coerce to safe defaults instead of
    letting it escape.
    """


__all__ = [
    "InvalidInput",
    "PipelineError",
    "UpstreamEmpty",
    "UpstreamError",
    "ValidationError",
]
