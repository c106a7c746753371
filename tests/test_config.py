import pytest

from diligence.config import (
    CorrectionMode,
    PipelineConfig,
    parse_bool,
    parse_non_negative_int,
    parse_stage_list,
)


def test_defaults() -> None:
    config = PipelineConfig()
    assert config.continue_on_error is True
    assert config.max_retries == 1
    assert config.correction_mode is CorrectionMode.LENIENT
    assert config.strict_corrections is False
    assert config.skip_stage_ids == ()


def test_parse_stage_list_dedupes_and_normalizes() -> None:
    assert parse_stage_list(" TEA-Analysis; claims-validation|tea-analysis ,") == ["tea-analysis", "claims-validation"]
    assert parse_stage_list(None) == []


def test_parse_helpers_fall_back_to_default() -> None:
    assert parse_bool("yes", False) is True
    assert parse_bool("off", True) is False
    assert parse_bool("maybe", True) is True
    assert parse_non_negative_int("3", 1) == 3
    assert parse_non_negative_int("-2", 1) == 1
    assert parse_non_negative_int("x", 1) == 1


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        PipelineConfig(max_retries=-1)
    with pytest.raises(ValueError):
        PipelineConfig(correction_mode="aggressive")
    with pytest.raises(ValueError):
        PipelineConfig(claim_batch_size=0)


def test_from_mapping_accepts_camel_case_keys() -> None:
    config = PipelineConfig.from_mapping(
        {
            "skipComponents": ["System-Integration"],
            "continueOnError": "false",
            "maxRetries": 2,
            "correctionMode": "STRICT",
            "stageOverrides": {"tea-analysis": {"temperature": 0.1}},
        }
    )
    assert config.skip_stage_ids == ("system-integration",)
    assert config.continue_on_error is False
    assert config.max_retries == 2
    assert config.correction_mode is CorrectionMode.STRICT
    assert config.stage_overrides["tea-analysis"]["temperature"] == 0.1


def test_from_env_reads_variables_and_applies_overrides() -> None:
    env = {
        "DILIGENCE_MODEL": "o3-mini",
        "DILIGENCE_MAX_RETRIES": "4",
        "DILIGENCE_CORRECTION_MODE": "strict",
        "DILIGENCE_SKIP_STAGES": "improvement-opportunities",
    }
    config = PipelineConfig.from_env(env, max_retries=0)
    assert config.model == "o3-mini"
    assert config.max_retries == 0
    assert config.strict_corrections is True
    assert config.skip_stage_ids == ("improvement-opportunities",)


def test_from_env_without_variables_uses_defaults() -> None:
    config = PipelineConfig.from_env({})
    assert config == PipelineConfig()
