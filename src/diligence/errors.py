from __future__ import annotations

from typing import Any, Optional


class DiligenceError(Exception):
    """Base class for pipeline errors."""


class TransientGenerationError(DiligenceError):
    """The external generator failed or returned something unusable."""


class GenerationParseError(TransientGenerationError):
    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class ValidationFailure(DiligenceError):
    def __init__(self, message: str, validation: Any = None) -> None:
        super().__init__(message)
        self.validation = validation


class SanityRejection(DiligenceError):
    def __init__(self, metric_id: str, value: float, suggested_value: Optional[float] = None) -> None:
        super().__init__(f"{metric_id}={value} rejected by sanity range")
        self.metric_id = metric_id
        self.value = value
        self.suggested_value = suggested_value


class ExtractionMiss(DiligenceError):
    def __init__(self, stage_id: str, metric_id: str, detail: str = "") -> None:
        message = f"no value for {stage_id}.{metric_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.stage_id = stage_id
        self.metric_id = metric_id


class PipelineCancelled(DiligenceError):
    pass
