import pytest

from diligence import aggregator
from diligence.debug_log import RunLogger
from diligence.models import RedFlag, RedFlagReport, StageError, StageOutput, TechnicalRisk


def _output(stage_id: str, content) -> StageOutput:
    return StageOutput(stage_id=stage_id, stage_name=stage_id, status="complete", content=content)


def _flag(severity: str, description: str = "efficiency above limit") -> RedFlag:
    return RedFlag(
        id="pv-eff",
        category="physics",
        severity=severity,
        description=description,
        explanation="exceeds the Shockley-Queisser limit",
        recommendation="request test data",
    )


def _risk(severity: str, name: str = "r") -> TechnicalRisk:
    return TechnicalRisk(id=name, risk=name, severity=severity, category="technical")


CLEAN = RedFlagReport(has_red_flags=False, summary="No red flags detected")


@pytest.mark.parametrize(
    ("successes", "errors", "aborted", "expected"),
    [
        (3, 0, False, "complete"),
        (2, 1, False, "partial"),
        (0, 2, False, "failed"),
        (2, 1, True, "failed"),
    ],
)
def test_derive_status(successes: int, errors: int, aborted: bool, expected: str) -> None:
    assert aggregator.derive_status(successes, errors, aborted) == expected


def test_risk_severity_accepts_numbers_and_levels() -> None:
    assert aggregator.risk_severity(5, 4) == "critical"
    assert aggregator.risk_severity(2, 3) == "high"
    assert aggregator.risk_severity("high", "medium") == "high"
    assert aggregator.risk_severity("medium", "medium") == "medium"
    assert aggregator.risk_severity("low", None) == "low"


def test_top_risks_are_sorted_by_severity() -> None:
    claims = _output(
        "claims-validation",
        {
            "validations": [
                {"claimId": "c1", "claim": "72% efficiency", "verdict": "questionable", "reasoning": "no data"},
                {"claimId": "c2", "claim": "80,000 h", "verdict": "plausible", "confidence": "low"},
                {"claimId": "c3", "claim": "purity", "verdict": "validated", "confidence": "high"},
            ]
        },
    )
    synthesis = _output(
        "rapid-synthesis",
        {"riskMatrix": [{"risk": "stack degradation", "probability": 5, "impact": 5, "mitigation": "pilot"}]},
    )
    report = RedFlagReport(has_red_flags=True, flags=[_flag("high")], summary="1 red flag")
    risks = aggregator.extract_top_risks(claims, synthesis, report)
    assert [risk.severity for risk in risks] == ["critical", "high", "high", "medium"]
    assert risks[0].risk == "stack degradation"
    assert risks[0].mitigation == "pilot"
    assert risks[1].id == "rf-pv-eff"
    assert risks[2].risk == "Unvalidated claim: 72% efficiency"


def test_traffic_light_branches() -> None:
    critical = RedFlagReport(has_red_flags=True, flags=[_flag("critical")], summary="1 critical")
    light, why = aggregator.traffic_light(critical, [], 7, None)
    assert light == "RED"
    assert why == "Critical physics violations detected: efficiency above limit"

    assert aggregator.traffic_light(CLEAN, [_risk("high")] * 3, 7, None)[0] == "RED"
    assert aggregator.traffic_light(CLEAN, [_risk("critical")], 7, None)[0] == "RED"
    assert aggregator.traffic_light(CLEAN, [_risk("high")], 7, None)[0] == "YELLOW"

    light, why = aggregator.traffic_light(CLEAN, [], 3, None)
    assert light == "YELLOW"
    assert why.startswith("Technology at TRL 3")

    concerning = _output("rapid-synthesis", {"assessmentRating": {"overall": "concerning", "score": 30}})
    assert aggregator.traffic_light(CLEAN, [], 6, concerning) == ("RED", "Assessment rating: concerning (score: 30/100)")
    conditional = _output("rapid-synthesis", {"assessmentRating": {"overall": "conditional", "score": 60}})
    assert aggregator.traffic_light(CLEAN, [], 6, conditional)[0] == "YELLOW"
    assert aggregator.traffic_light(CLEAN, [_risk("medium")], 6, None)[0] == "GREEN"


def test_recommend_matches_light() -> None:
    critical = RedFlagReport(has_red_flags=True, flags=[_flag("critical")], summary="")
    decision, rationale = aggregator.recommend("RED", critical, [])
    assert decision == "DO_NOT_PROCEED"
    assert "efficiency above limit" in rationale
    decision, rationale = aggregator.recommend("YELLOW", CLEAN, [_risk("high", "scale-up")])
    assert decision == "PROCEED_WITH_CAUTION"
    assert "scale-up" in rationale
    assert aggregator.recommend("GREEN", CLEAN, [])[0] == "PROCEED"


def test_executive_summary_lists_top_risks(sample_input) -> None:
    risks = [_risk("critical", "membrane failure"), _risk("high", "supply chain")]
    synthesis = _output("rapid-synthesis", {"executiveSummary": "  Promising but unproven.  "})
    text = aggregator.executive_summary(sample_input, "RED", 5, risks, "DO_NOT_PROCEED", synthesis)
    assert text.startswith("**Quick TRL Assessment: FAIL**")
    assert "**TRL:** 5/9" in text
    assert "**Risk Summary:** 1 critical, 1 high-severity risks identified." in text
    assert "- [CRITICAL] membrane failure" in text
    assert "**Recommendation:** DO NOT PROCEED" in text
    assert text.endswith("**Synthesis:** Promising but unproven.\n")


def test_key_metrics_from_mapping_and_list() -> None:
    technology = _output(
        "technology-deep-dive",
        {
            "overview": {
                "performanceMetrics": {
                    "efficiency": {"value": 72, "unit": "%", "benchmark": {"value": 65, "source": "DOE"}},
                    "lifetime": {"value": 80000, "unit": "h", "benchmark": 80000},
                    "purity": {"value": "99.99", "unit": "%"},
                }
            }
        },
    )
    metrics = aggregator.extract_key_metrics(technology)
    assert [(m.name, m.value, m.status) for m in metrics] == [
        ("efficiency", "72 %", "above_benchmark"),
        ("lifetime", "80000 h", "within_range"),
        ("purity", "99.99 %", "no_benchmark"),
    ]
    assert metrics[0].benchmark == "65 % (DOE)"

    listed = _output("technology-deep-dive", {"performanceMetrics": [{"value": 3, "unit": "kWh", "benchmark": 5}]})
    only = aggregator.extract_key_metrics(listed)
    assert only[0].name == "metric-1"
    assert only[0].status == "below_benchmark"
    assert aggregator.extract_key_metrics(None) == []


def test_aggregate_orders_outputs_and_reads_rating(sample_input) -> None:
    outputs = {
        "final-synthesis": _output(
            "final-synthesis",
            {
                "assessmentRating": {"overall": "promising", "score": 81, "keyStrengths": ["catalyst"], "keyWeaknesses": []},
                "recommendations": [{"recommendation": "Run a pilot"}, "Audit supply chain"],
            },
        ),
        "technology-deep-dive": _output("technology-deep-dive", {}),
    }
    result = aggregator.aggregate(
        input=sample_input,
        plan=["technology-deep-dive", "claims-validation", "final-synthesis"],
        outputs=outputs,
        errors=[StageError(stage_id="claims-validation", error="timeout")],
        started_at="2026-01-01T00:00:00",
        duration=12.0,
    )
    assert result.status == "partial"
    assert [output.stage_id for output in result.outputs] == ["technology-deep-dive", "final-synthesis"]
    assert result.rating == "promising"
    assert result.rating_score == 81
    assert result.summary.key_strengths == ["catalyst"]
    assert result.summary.next_steps == ["Run a pilot", "Audit supply chain"]
    assert result.metadata.components_run == 3
    assert result.metadata.components_failed == 1


def test_aggregate_logs_missing_rating(sample_input) -> None:
    logger = RunLogger("agg")
    result = aggregator.aggregate(
        input=sample_input,
        plan=["final-synthesis"],
        outputs={"final-synthesis": _output("final-synthesis", {"executiveSummary": "text only"})},
        errors=[],
        started_at="2026-01-01T00:00:00",
        duration=1.0,
        logger=logger,
    )
    assert result.status == "complete"
    assert result.rating is None
    assert result.rating_score is None
    assert any(
        event["type"] == "error" and "final-synthesis.overallRating" in event["message"] for event in logger.events
    )
