from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional

DEFAULT_MODEL = "gpt-4o-mini"
MODEL_ENV = "DILIGENCE_MODEL"
MAX_RETRIES_ENV = "DILIGENCE_MAX_RETRIES"
CORRECTION_MODE_ENV = "DILIGENCE_CORRECTION_MODE"
SKIP_STAGES_ENV = "DILIGENCE_SKIP_STAGES"


class CorrectionMode(str, Enum):
    STRICT = "strict"
    LENIENT = "lenient"

    @classmethod
    def parse(cls, value: object) -> "CorrectionMode":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for mode in cls:
            if mode.value == text:
                return mode
        raise ValueError(f"unknown correction mode: {value!r} (expected strict|lenient)")


def parse_stage_list(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    tokens: list[str] = []
    seen: set[str] = set()
    for part in raw.replace(";", ",").replace("|", ",").split(","):
        cleaned = part.strip().lower()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            tokens.append(cleaned)
    return tokens


def parse_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def parse_non_negative_int(value: object, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


@dataclass(frozen=True)
class PipelineConfig:
    skip_stage_ids: tuple[str, ...] = ()
    continue_on_error: bool = True
    max_retries: int = 1
    metrics_max_retries: int = 1
    correction_mode: CorrectionMode = CorrectionMode.LENIENT
    claim_batch_size: int = 3
    skip_red_flags: bool = False
    model: str = DEFAULT_MODEL
    echo: bool = False
    stage_overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.metrics_max_retries < 0:
            raise ValueError("metrics_max_retries must be >= 0")
        if self.claim_batch_size < 1:
            raise ValueError("claim_batch_size must be >= 1")
        object.__setattr__(self, "correction_mode", CorrectionMode.parse(self.correction_mode))
        object.__setattr__(self, "skip_stage_ids", tuple(self.skip_stage_ids))

    @property
    def strict_corrections(self) -> bool:
        return self.correction_mode is CorrectionMode.STRICT

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "PipelineConfig":
        def pick(*keys: str) -> Any:
            for key in keys:
                if key in payload:
                    return payload[key]
            return None

        skip = pick("skip_stage_ids", "skipStageIds", "skip_stages", "skipComponents")
        if isinstance(skip, str):
            skip_ids = tuple(parse_stage_list(skip))
        else:
            skip_ids = tuple(str(item).strip().lower() for item in (skip or ()) if str(item).strip())
        defaults = cls()
        return cls(
            skip_stage_ids=skip_ids,
            continue_on_error=parse_bool(pick("continue_on_error", "continueOnError"), defaults.continue_on_error),
            max_retries=parse_non_negative_int(pick("max_retries", "maxRetries"), defaults.max_retries),
            metrics_max_retries=parse_non_negative_int(
                pick("metrics_max_retries", "metricsMaxRetries"), defaults.metrics_max_retries
            ),
            correction_mode=pick("correction_mode", "correctionMode") or defaults.correction_mode,
            claim_batch_size=parse_non_negative_int(
                pick("claim_batch_size", "claimBatchSize"), defaults.claim_batch_size
            )
            or defaults.claim_batch_size,
            skip_red_flags=parse_bool(pick("skip_red_flags", "skipRedFlags"), defaults.skip_red_flags),
            model=str(pick("model") or defaults.model),
            echo=parse_bool(pick("echo"), defaults.echo),
            stage_overrides=dict(pick("stage_overrides", "stageOverrides") or {}),
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        base = cls(
            skip_stage_ids=tuple(parse_stage_list(env.get(SKIP_STAGES_ENV))),
            max_retries=parse_non_negative_int(env.get(MAX_RETRIES_ENV), cls.max_retries),
            correction_mode=env.get(CORRECTION_MODE_ENV) or CorrectionMode.LENIENT,
            model=env.get(MODEL_ENV) or DEFAULT_MODEL,
        )
        return replace(base, **overrides) if overrides else base
