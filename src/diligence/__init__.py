"""Clean-energy technology due-diligence pipeline."""

from __future__ import annotations

from .versioning import VERSION as __version__

__all__ = [
    "AssessmentOrchestrator",
    "RapidAssessmentOrchestrator",
    "CancellationToken",
    "PipelineConfig",
    "PipelineInput",
    "PipelineResult",
    "__version__",
]


def __getattr__(name: str):
    if name in {"AssessmentOrchestrator", "RapidAssessmentOrchestrator"}:
        from . import orchestrator

        return getattr(orchestrator, name)
    if name == "CancellationToken":
        from .events import CancellationToken

        return CancellationToken
    if name == "PipelineConfig":
        from .config import PipelineConfig

        return PipelineConfig
    if name in {"PipelineInput", "PipelineResult"}:
        from . import models

        return getattr(models, name)
    raise AttributeError(f"module 'diligence' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(__all__)
