"""Bounded generate -> validate -> corrective re-generate loop."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import GenerationParseError, ValidationFailure
from .generation import parse_json_response
from .models import BundleValidation


class LoopState(str, Enum):
    GENERATING = "generating"
    VALIDATING = "validating"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ValidatedOutput:
    value: Any
    attempts: int
    validation: Optional[BundleValidation] = None
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    states: list[LoopState] = field(default_factory=list)


def build_correction_prompt(original_prompt: str, validation: BundleValidation) -> str:
    issues: list[str] = []
    if validation.missing_required:
        issues.append(f"Missing required fields: {', '.join(validation.missing_required)}")
    if validation.invalid_values:
        formatted = ", ".join(f"{item.field} ({item.reason})" for item in validation.invalid_values)
        issues.append(f"Invalid values: {formatted}")
    if validation.warnings:
        issues.append(f"Warnings: {', '.join(validation.warnings)}")
    bullet_list = "\n".join(f"- {issue}" for issue in issues)
    return (
        "IMPORTANT: Your previous response had validation issues that must be fixed:\n\n"
        f"{bullet_list}\n\n"
        "Please regenerate your response ensuring ALL standardizedMetrics fields are properly populated.\n\n"
        f"{original_prompt}"
    )


def _annotate(value: Any, validation: BundleValidation) -> tuple[list[str], list[str], list[str]]:
    missing = [f"Missing: {name}" for name in validation.missing_required]
    invalid = [f"Invalid {item.field}: {item.reason}" for item in validation.invalid_values]
    warnings = list(validation.warnings)
    bundle = value.get("standardizedMetrics") if isinstance(value, dict) else None
    if isinstance(bundle, dict):
        existing = bundle.get("warnings")
        bundle["warnings"] = [*(existing if isinstance(existing, list) else []), *warnings, *missing, *invalid]
    return warnings, missing, invalid


def generate_validated(
    generate: Callable[[str], str],
    prompt: str,
    validate: Callable[[Any], BundleValidation],
    max_retries: int,
    *,
    parse: Callable[[str], Any] = parse_json_response,
    logger: Any = None,
    stage_id: str = "",
    raise_on_invalid: bool = False,
) -> ValidatedOutput:
    """Run one generation with at most ``max_retries`` corrective re-calls.

    Generator exceptions propagate unchanged. A parse failure on the last
    attempt raises ``GenerationParseError``; a validation failure on the last
    attempt returns the parsed value flagged ``degraded``, or raises
    ``ValidationFailure`` when ``raise_on_invalid`` is set.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    state = LoopState.GENERATING
    states: list[LoopState] = [state]
    attempt = 0
    current_prompt = prompt
    parsed: Any = None

    while True:
        if state is LoopState.GENERATING:
            text = generate(current_prompt)
            try:
                parsed = parse(text)
            except GenerationParseError as exc:
                if attempt >= max_retries:
                    states.append(LoopState.FAILED)
                    if logger is not None:
                        logger.error(stage_id, f"Unparseable output after {attempt + 1} attempt(s): {exc}")
                    raise
                attempt += 1
                if logger is not None:
                    logger.stage_retry(stage_id, attempt, f"parse failure: {exc}")
                states.append(LoopState.GENERATING)
                continue
            state = LoopState.VALIDATING
        elif state is LoopState.VALIDATING:
            validation = validate(parsed)
            if logger is not None:
                logger.log_validation(
                    stage_id,
                    "bundle",
                    validation.is_valid,
                    validation.score,
                    attempt=attempt,
                    missing_required=validation.missing_required,
                    warnings=validation.warnings,
                )
            if validation.is_valid:
                state = LoopState.DONE
                states.append(state)
                return ValidatedOutput(value=parsed, attempts=attempt + 1, validation=validation, states=states)
            if attempt < max_retries:
                states.append(LoopState.RETRYING)
                current_prompt = build_correction_prompt(prompt, validation)
                attempt += 1
                if logger is not None:
                    issues = ", ".join(validation.missing_required) or "invalid values"
                    logger.stage_retry(stage_id, attempt, f"validation failed: {issues}")
                state = LoopState.GENERATING
            elif raise_on_invalid:
                state = LoopState.FAILED
                states.append(state)
                raise ValidationFailure(
                    f"{stage_id or 'generation'}: output failed validation after {attempt + 1} attempt(s)",
                    validation,
                )
            else:
                warnings, missing, invalid = _annotate(parsed, validation)
                print(
                    f"[warn] {stage_id or 'generation'}: returning output with validation warnings "
                    f"after {attempt + 1} attempt(s)",
                    file=sys.stderr,
                )
                state = LoopState.DONE
                states.append(state)
                return ValidatedOutput(
                    value=parsed,
                    attempts=attempt + 1,
                    validation=validation,
                    degraded=True,
                    warnings=warnings,
                    missing=missing,
                    invalid=invalid,
                    states=states,
                )
        states.append(state)
