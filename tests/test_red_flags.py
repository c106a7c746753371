from diligence import red_flags
from diligence.models import Claim, PipelineInput


def _input(technology: str, *claims: str, description: str = "", sources: bool = True) -> PipelineInput:
    return PipelineInput(
        assessment_id="rf",
        title=technology,
        description=description,
        technology_type=technology,
        domain_id="general",
        claims=[
            Claim(id=f"c{idx}", text=text, source="doc" if sources else "")
            for idx, text in enumerate(claims, start=1)
        ],
    )


def test_efficiency_above_shockley_queisser_is_critical() -> None:
    flags = red_flags.check_thermodynamic_violations(_input("Silicon PV module", "Cell with 52% efficiency"))
    assert len(flags) == 1
    flag = flags[0]
    assert flag.severity == "critical"
    assert flag.limit == 33.7
    assert flag.claim_id == "c1"
    assert "Shockley-Queisser" in flag.description


def test_efficiency_slightly_above_limit_is_high() -> None:
    flags = red_flags.check_thermodynamic_violations(_input("Wind turbine", "Rotor with 62% efficiency"))
    assert [flag.severity for flag in flags] == ["high"]


def test_efficiency_near_limit_is_medium() -> None:
    flags = red_flags.check_thermodynamic_violations(_input("Silicon PV module", "Record 33% efficiency cell"))
    assert [flag.id for flag in flags] == ["thermo-eff-high-c1"]
    assert flags[0].severity == "medium"


def test_energy_intensity_below_minimum() -> None:
    flags = red_flags.check_thermodynamic_violations(_input("PEM electrolyzer", "Consumes 30 kWh/kg of hydrogen"))
    assert len(flags) == 1
    assert flags[0].severity == "critical"
    assert flags[0].limit == 39.4


def test_lab_scale_with_cheap_cost_claim() -> None:
    data = _input(
        "Novel catalyst",
        "Production cost of $20 per unit",
        "Commercial in 2 years to commercial launch",
        description="Currently at lab scale",
    )
    ids = {flag.id for flag in red_flags.check_trl_mismatches(data)}
    assert ids == {"trl-conflict-1", "trl-cost-mismatch", "trl-timeline"}


def test_cost_claim_far_below_benchmark() -> None:
    flags = red_flags.check_benchmark_outliers(_input("Battery lithium storage", "Pack cost of $40/kWh"))
    assert [flag.severity for flag in flags] == ["high"]
    assert flags[0].limit == 100


def test_missing_data_and_sources() -> None:
    flags = red_flags.check_missing_critical_data(_input("Flow battery", "Great product", "Works well", sources=False))
    by_id = {flag.id: flag for flag in flags}
    assert by_id["missing-data"].severity == "high"
    assert "cycle life" in by_id["missing-data"].description
    assert by_id["missing-sources"].description == "2 of 2 claims lack source attribution"


def test_economic_claims() -> None:
    flags = red_flags.check_economic_impossibilities(
        _input("Anything", "Negative cost of production", "40% learning rate", "6 months payback")
    )
    assert [flag.category for flag in flags] == ["economic"] * 3


def test_detect_red_flags_summary() -> None:
    report = red_flags.detect_red_flags(_input("Silicon PV module", "Cell with 52% efficiency"))
    assert report.has_red_flags is True
    assert report.summary.startswith("Detected 1 critical")
    assert report.execution_ms >= 0


def test_clean_claims_have_no_flags() -> None:
    assert red_flags.summarize_flags([]).startswith("No red flags detected")
    assert red_flags.skipped_report().summary == "Skipped"
