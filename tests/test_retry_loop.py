import json

import pytest

from diligence.debug_log import RunLogger
from diligence.errors import GenerationParseError, ValidationFailure
from diligence.models import BundleValidation, InvalidValue
from diligence.retry_loop import LoopState, build_correction_prompt, generate_validated


def _validator(valid_after: int):
    calls = {"n": 0}

    def validate(value):
        calls["n"] += 1
        if calls["n"] > valid_after:
            return BundleValidation(is_valid=True, score=100)
        return BundleValidation(
            is_valid=False,
            score=40,
            missing_required=["trl"],
            invalid_values=[InvalidValue("efficiency", "Must be 0-100%")],
        )

    return validate


def _generator(replies):
    prompts = []

    def generate(prompt: str) -> str:
        prompts.append(prompt)
        return replies.pop(0)

    return generate, prompts


def test_returns_first_valid_output_without_retry() -> None:
    generate, prompts = _generator([json.dumps({"standardizedMetrics": {}})])
    result = generate_validated(generate, "base prompt", _validator(0), 2)
    assert len(prompts) == 1
    assert result.attempts == 1
    assert result.degraded is False
    assert result.states[-1] is LoopState.DONE


def test_corrective_prompt_wraps_original_prompt() -> None:
    replies = [json.dumps({"n": 1}), json.dumps({"n": 2})]
    generate, prompts = _generator(replies)
    result = generate_validated(generate, "base prompt", _validator(1), 2)
    assert result.value == {"n": 2}
    assert result.attempts == 2
    assert prompts[0] == "base prompt"
    assert prompts[1].startswith("IMPORTANT: Your previous response had validation issues that must be fixed:")
    assert "- Missing required fields: trl" in prompts[1]
    assert "- Invalid values: efficiency (Must be 0-100%)" in prompts[1]
    assert prompts[1].endswith("base prompt")
    assert result.states == [
        LoopState.GENERATING,
        LoopState.VALIDATING,
        LoopState.RETRYING,
        LoopState.GENERATING,
        LoopState.VALIDATING,
        LoopState.DONE,
    ]


@pytest.mark.parametrize("max_retries", [0, 1, 3])
def test_generator_calls_are_bounded(max_retries: int) -> None:
    replies = [json.dumps({"standardizedMetrics": {"warnings": ["prior"]}}) for _ in range(10)]
    generate, prompts = _generator(replies)
    result = generate_validated(generate, "p", _validator(100), max_retries)
    assert len(prompts) == max_retries + 1
    assert result.degraded is True
    assert result.missing == ["Missing: trl"]
    assert result.invalid == ["Invalid efficiency: Must be 0-100%"]
    assert result.value["standardizedMetrics"]["warnings"] == [
        "prior",
        "Missing: trl",
        "Invalid efficiency: Must be 0-100%",
    ]


def test_raise_on_invalid_after_last_attempt() -> None:
    generate, prompts = _generator([json.dumps({}), json.dumps({})])
    with pytest.raises(ValidationFailure) as excinfo:
        generate_validated(generate, "p", _validator(100), 1, raise_on_invalid=True, stage_id="tea-analysis")
    assert len(prompts) == 2
    assert excinfo.value.validation.missing_required == ["trl"]


def test_parse_failure_retries_same_prompt_then_raises() -> None:
    generate, prompts = _generator(["not json", "still not json"])
    with pytest.raises(GenerationParseError):
        generate_validated(generate, "p", _validator(0), 1)
    assert prompts == ["p", "p"]


def test_parse_failure_recovers_on_retry() -> None:
    generate, prompts = _generator(["oops", "```json\n{\"ok\": true}\n```"])
    result = generate_validated(generate, "p", _validator(0), 1)
    assert result.value == {"ok": True}
    assert result.attempts == 2


def test_generator_exceptions_propagate() -> None:
    def generate(prompt: str) -> str:
        raise RuntimeError("upstream down")

    with pytest.raises(RuntimeError):
        generate_validated(generate, "p", _validator(0), 3)


def test_negative_retry_bound_rejected() -> None:
    with pytest.raises(ValueError):
        generate_validated(lambda prompt: "{}", "p", _validator(0), -1)


def test_build_correction_prompt_lists_warnings() -> None:
    validation = BundleValidation(is_valid=False, score=50, warnings=["capex missing some optional fields"])
    prompt = build_correction_prompt("original", validation)
    assert "- Warnings: capex missing some optional fields" in prompt
    assert "Please regenerate your response" in prompt


def test_validation_retry_is_logged_with_missing_fields() -> None:
    logger = RunLogger("loop")
    logger.stage_start("tea-analysis", "Techno-Economic Analysis")
    generate, _ = _generator([json.dumps({"n": 1}), json.dumps({"n": 2})])
    generate_validated(generate, "base prompt", _validator(1), 1, logger=logger, stage_id="tea-analysis")
    retries = [event for event in logger.events if event["type"] == "retry"]
    assert [event["data"]["error"] for event in retries] == ["validation failed: trl"]
    assert logger.stages["tea-analysis"].retries == 1
