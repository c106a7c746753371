import pytest

from diligence import sanity
from diligence.debug_log import RunLogger
from diligence.errors import SanityRejection
from diligence.models import StageOutput


def test_validate_value_rejects_with_median_suggestion() -> None:
    result = sanity.validate_value("cycleLife", 50, "energy-storage")
    assert result.action == "reject"
    assert result.valid is False
    assert result.suggested_value == 25050
    assert result.expected_range is not None
    assert result.expected_range.fail_action == "reject"


def test_validate_value_pass_is_inside_range() -> None:
    result = sanity.validate_value("efficiency", 72, "hydrogen")
    assert result.action == "pass"
    assert result.valid is True
    assert result.expected_range.min <= 72 <= result.expected_range.max
    assert result.suggested_value is None


def test_validate_value_warn_outside_range() -> None:
    result = sanity.validate_value("lcoh", 80, "hydrogen")
    assert result.action == "warn"
    assert "outside expected range [1, 50] $/kg" in result.message
    assert result.suggested_value == 25.5


def test_validate_value_without_range_passes() -> None:
    result = sanity.validate_value("widgets", 5, "hydrogen")
    assert result.action == "pass"
    assert result.expected_range is None
    assert result.message == "No sanity range defined for this metric"


def test_validate_value_resolves_domain_aliases() -> None:
    result = sanity.validate_value("energyDensity", 20, "battery")
    assert result.action == "reject"


def test_validate_value_records_on_logger() -> None:
    logger = RunLogger("run-1")
    sanity.validate_value("efficiency", 72, "hydrogen", logger=logger, stage_id="performance-simulation")
    sanity.validate_value("lcoh", 80, "hydrogen", logger=logger)
    sanity.validate_value("cycleLife", 50, "energy-storage", logger=logger)
    assert logger.sanity_tally() == {"passed": 1, "warned": 1, "rejected": 1}


def test_ensure_plausible_raises_on_reject() -> None:
    with pytest.raises(SanityRejection) as excinfo:
        sanity.ensure_plausible("cycleLife", 50, "energy-storage")
    assert excinfo.value.suggested_value == 25050
    assert sanity.ensure_plausible("lcoh", 80, "hydrogen").action == "warn"


def test_validate_trl_against_technology_benchmark() -> None:
    low = sanity.validate_trl(3, "hydrogen", "PEM electrolyzer")
    assert low.action == "correct"
    assert low.corrected_trl == 8
    assert "under-estimated" in low.message

    near = sanity.validate_trl(6, "hydrogen", "PEM electrolyzer")
    assert near.valid is True
    assert near.action == "warn"

    inside = sanity.validate_trl(8, "hydrogen", "PEM electrolyzer")
    assert inside.action == "pass"


def test_validate_trl_clamps_out_of_scale_values() -> None:
    assert sanity.validate_trl(12, "hydrogen").corrected_trl == 9
    assert sanity.validate_trl("unknown", "hydrogen").corrected_trl == 1


def test_validate_bundle_complete(bundle_factory) -> None:
    result = sanity.validate_bundle(bundle_factory(), "hydrogen")
    assert result.is_valid is True
    assert result.score == 100
    assert result.missing_required == []


def test_validate_bundle_missing_block() -> None:
    result = sanity.validate_bundle(None, "hydrogen")
    assert result.is_valid is False
    assert result.score == 0
    assert result.missing_required == ["standardizedMetrics (entire block missing)"]


def test_validate_bundle_flags_invalid_values(bundle_factory) -> None:
    bundle = bundle_factory(trl=12, rating="GREAT")
    del bundle["generatedAt"]
    result = sanity.validate_bundle(bundle, "hydrogen")
    assert result.is_valid is False
    assert result.missing_required == ["generatedAt"]
    assert [item.field for item in result.invalid_values] == ["trl", "rating"]
    assert result.score == 70


def test_format_sanity_results_lists_non_passing() -> None:
    results = [
        sanity.validate_value("efficiency", 72, "hydrogen"),
        sanity.validate_value("cycleLife", 50, "energy-storage"),
    ]
    text = sanity.format_sanity_results(results)
    assert text.splitlines()[0] == "Sanity checks: 1 passed, 0 warned, 1 rejected"
    assert "(suggested: 25050)" in text


def test_validate_output_scores_stage_with_bundle(bundle_factory) -> None:
    output = StageOutput(
        stage_id="technology-deep-dive",
        stage_name="Technology Deep Dive",
        status="complete",
        content={"standardizedMetrics": bundle_factory(), "trlAssessment": {"currentTRL": 7}},
    )
    report = sanity.validate_output("technology-deep-dive", output, "hydrogen")
    assert report.has_standardized_metrics is True
    assert report.bundle is not None and report.bundle.is_valid
    assert report.errors == []
    assert report.score >= 70
