"""Plausibility checks for generated metrics.

``validate_value`` classifies one number against a domain range,
``validate_bundle`` scores a ``standardizedMetrics`` block, and
``validate_output`` gives a stage output an overall quality score.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from . import benchmarks
from .errors import SanityRejection
from .extraction import VALID_RATINGS, extract_metrics, metric_ids_for_stage
from .models import (
    BundleValidation,
    InvalidValue,
    SanityCheckResult,
    SanityRange,
    StageOutput,
    STAGE_COMPLETE,
)


def _s(lo: float, hi: float, unit: str, action: str, description: str = "") -> SanityRange:
    return SanityRange(min=lo, max=hi, unit=unit, fail_action=action, description=description)


COMMON_RANGES: Mapping[str, SanityRange] = MappingProxyType(
    {
        "trl": _s(1, 9, "", "reject", "Technology Readiness Level must be 1-9"),
        "irr": _s(-50, 100, "%", "warn", "IRR outside typical range"),
        "payback": _s(0.5, 30, "years", "warn", "Payback period outside typical range"),
    }
)

SANITY_RANGES: Mapping[str, Mapping[str, SanityRange]] = MappingProxyType(
    {
        "hydrogen": {
            "lcoh": _s(1, 50, "$/kg", "warn", "LCOH typically $2-10/kg for green hydrogen"),
            "efficiency": _s(50, 95, "%", "warn", "Electrolyzer efficiency typically 60-85%"),
            "specificConsumption": _s(3.5, 8, "kWh/Nm3", "warn", "Typical range 4.0-5.5 kWh/Nm3"),
            "lifetime": _s(20000, 150000, "hours", "warn", "Stack lifetime typically 40,000-100,000 hours"),
            "capex": _s(200, 3000, "$/kW", "warn", "Electrolyzer CAPEX typically $500-1500/kW"),
        },
        "energy-storage": {
            "lcos": _s(0.02, 0.5, "$/kWh", "warn", "LCOS typically $0.05-0.25/kWh"),
            "efficiency": _s(70, 98, "%", "warn", "Round-trip efficiency typically 80-95%"),
            "cycleLife": _s(100, 50000, "cycles", "reject", "Cycle life typically 1,000-10,000 cycles"),
            "energyDensity": _s(50, 1000, "Wh/kg", "reject", "Energy density typically 100-300 Wh/kg for Li-ion"),
            "capex": _s(50, 1000, "$/kWh", "warn", "Battery CAPEX typically $100-400/kWh"),
        },
        "industrial": {
            "lcoc": _s(50, 2000, "$/tonne", "warn", "Capture cost typically $100-600/tonne CO2"),
            "captureEfficiency": _s(50, 99, "%", "warn", "Capture efficiency typically 85-95%"),
            "energyIntensity": _s(500, 5000, "kWh/tonne", "warn", "Energy intensity typically 1,500-3,000 kWh/tonne"),
            "lifetime": _s(15, 40, "years", "warn", "Plant lifetime typically 20-30 years"),
        },
        "clean-energy": {
            "lcoe": _s(10, 200, "$/MWh", "warn", "LCOE typically $25-100/MWh for renewables"),
            "efficiency": _s(10, 50, "%", "warn", "Solar module efficiency typically 18-25%"),
            "capacityFactor": _s(10, 60, "%", "warn", "Capacity factor typically 15-45%"),
            "lifetime": _s(20, 40, "years", "warn", "Asset lifetime typically 25-30 years"),
        },
        "waste-to-fuel": {
            "lcof": _s(2, 20, "$/GGE", "warn", "Levelized cost of fuel typically $3-10/GGE"),
            "biocrudeYield": _s(15, 60, "wt%", "reject", "Biocrude yield typically 25-45 wt% of dry feedstock"),
            "biocharYield": _s(5, 35, "wt%", "warn", "Biochar yield typically 10-25 wt%"),
            "energyRecovery": _s(40, 85, "%", "reject", "Energy recovery typically 55-75%"),
            "efficiency": _s(40, 85, "%", "reject", "HTL energy efficiency typically 55-75%"),
            "massConversion": _s(50, 95, "%", "reject", "Mass conversion typically 70-90%"),
            "carbonConversion": _s(50, 90, "%", "warn", "Carbon conversion typically 60-80%"),
            "reactorTemp": _s(250, 400, "°C", "reject", "HTL operates at 280-370°C"),
            "reactorPressure": _s(10, 35, "MPa", "reject", "HTL operates at 15-25 MPa"),
            "capex": _s(1000, 12000, "$/tonne-yr", "warn", "HTL CAPEX typically $3,000-8,000/tonne-yr"),
            "lifetime": _s(10, 30, "years", "warn", "Plant lifetime typically 15-25 years"),
            "biocrudeHHV": _s(28, 42, "MJ/kg", "warn", "Biocrude HHV typically 32-38 MJ/kg"),
        },
    }
)

BUNDLE_REQUIRED_FIELDS = (
    "primaryCostMetric",
    "efficiency",
    "trl",
    "rating",
    "capex",
    "opex",
    "secondaryMetrics",
    "generatedAt",
    "sourceComponent",
)
BUNDLE_METRIC_FIELDS = ("primaryCostMetric", "efficiency", "capex", "opex")
HOURS_PER_YEAR = 8760

REQUIRED_METRICS_BY_DOMAIN: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "hydrogen": ("lcoh", "efficiency", "specific_consumption", "output_pressure", "stack_lifetime"),
        "energy-storage": ("lcos", "efficiency", "cycle_life", "energy_density", "power_density"),
        "clean-energy": ("lcoe", "efficiency", "capacity_factor", "lifetime"),
        "industrial": ("lcoc", "efficiency", "capture_rate", "energy_penalty"),
        "transportation": ("tco", "efficiency", "range", "charging_time"),
        "general": ("npv", "irr", "payback"),
    }
)

_METRIC_STRIP = re.compile(r"[^a-z]")


def _normalize_metric(metric_id: str) -> str:
    return _METRIC_STRIP.sub("", str(metric_id or "").lower())


def _match_range(table: Mapping[str, SanityRange], metric_id: str) -> Optional[SanityRange]:
    normalized = _normalize_metric(metric_id)
    if not normalized:
        return None
    for key, sanity_range in table.items():
        candidate = _normalize_metric(key)
        if candidate in normalized or normalized in candidate:
            return sanity_range
    return None


def find_range(metric_id: str, domain: str) -> Optional[SanityRange]:
    domain_key = benchmarks.resolve_domain(domain, SANITY_RANGES)
    domain_table = SANITY_RANGES.get(domain_key, {})
    return _match_range(domain_table, metric_id) or _match_range(COMMON_RANGES, metric_id)


def in_range_unit(metric_id: str, value: float, unit: str, domain: str) -> float:
    """Express ``value`` (given in ``unit``) in the unit of its sanity range."""
    sanity_range = find_range(metric_id, domain)
    if sanity_range is None or not unit or unit == sanity_range.unit:
        return value
    if unit == "hours" and sanity_range.unit == "years":
        return value / HOURS_PER_YEAR
    if unit == "years" and sanity_range.unit == "hours":
        return value * HOURS_PER_YEAR
    return value


def validate_value(metric_id: str, value: float, domain: str, *, logger: Any = None, stage_id: str = "") -> SanityCheckResult:
    sanity_range = find_range(metric_id, domain)
    if sanity_range is not None:
        bounds = f"[{sanity_range.min:g}, {sanity_range.max:g}]"
        if sanity_range.unit:
            bounds = f"{bounds} {sanity_range.unit}"
    if sanity_range is None:
        result = SanityCheckResult(
            metric_id=metric_id,
            value=value,
            action="pass",
            message="No sanity range defined for this metric",
        )
    elif sanity_range.min <= value <= sanity_range.max:
        result = SanityCheckResult(
            metric_id=metric_id,
            value=value,
            action="pass",
            message=f"Value {value:g} is within expected range {bounds}",
            expected_range=sanity_range,
        )
    else:
        result = SanityCheckResult(
            metric_id=metric_id,
            value=value,
            action=sanity_range.fail_action,
            message=f"Value {value:g} is outside expected range {bounds}. {sanity_range.description}".rstrip(),
            expected_range=sanity_range,
            suggested_value=(sanity_range.min + sanity_range.max) / 2,
        )
    if logger is not None:
        logger.log_sanity(result, stage_id)
    return result


def ensure_plausible(metric_id: str, value: float, domain: str, *, logger: Any = None, stage_id: str = "") -> SanityCheckResult:
    """Like ``validate_value`` but a reject raises ``SanityRejection``."""
    result = validate_value(metric_id, value, domain, logger=logger, stage_id=stage_id)
    if result.action == "reject":
        raise SanityRejection(metric_id, value, result.suggested_value)
    return result


def validate_values(metrics: Mapping[str, float], domain: str, *, logger: Any = None, stage_id: str = "") -> dict[str, SanityCheckResult]:
    return {
        metric_id: validate_value(metric_id, value, domain, logger=logger, stage_id=stage_id)
        for metric_id, value in metrics.items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    }


@dataclass
class TrlCheck:
    valid: bool
    action: str
    message: str
    corrected_trl: Optional[int] = None


def validate_trl(trl: Any, domain: str, technology_type: Optional[str] = None) -> TrlCheck:
    try:
        number = float(trl)
    except (TypeError, ValueError):
        number = math.nan
    if math.isnan(number) or not number.is_integer() or not 1 <= number <= 9:
        clamped = 1 if math.isnan(number) else int(max(1, min(9, round(number))))
        return TrlCheck(False, "correct", f"TRL {trl} must be an integer from 1 to 9", clamped)
    level = int(number)
    benchmark = benchmarks.get_trl_benchmark(domain, technology_type)
    if benchmark is None:
        return TrlCheck(True, "pass", f"No TRL benchmark for {domain}")
    if benchmark.min <= level <= benchmark.max:
        return TrlCheck(True, "pass", f"TRL {level} consistent with benchmark ({benchmark.description})")
    if level > benchmark.max + 1:
        return TrlCheck(
            False,
            "correct",
            f"TRL {level} appears over-estimated; expected {benchmark.min}-{benchmark.max} ({benchmark.description})",
            benchmark.typical,
        )
    if level < benchmark.min - 1:
        return TrlCheck(
            False,
            "correct",
            f"TRL {level} appears under-estimated; expected {benchmark.min}-{benchmark.max} ({benchmark.description})",
            benchmark.typical,
        )
    return TrlCheck(
        True,
        "warn",
        f"TRL {level} slightly outside typical range {benchmark.min}-{benchmark.max}",
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_bundle(bundle: Optional[Mapping[str, Any]], domain: str) -> BundleValidation:
    if not isinstance(bundle, Mapping):
        return BundleValidation(
            is_valid=False,
            score=0,
            missing_required=["standardizedMetrics (entire block missing)"],
        )
    score = 100
    missing: list[str] = []
    invalid: list[InvalidValue] = []
    warnings: list[str] = []

    for name in BUNDLE_REQUIRED_FIELDS:
        if bundle.get(name) is None:
            missing.append(name)
            score -= 10

    trl = bundle.get("trl")
    if _is_number(trl) and (trl < 1 or trl > 9 or not float(trl).is_integer()):
        invalid.append(InvalidValue("trl", "Must be integer 1-9"))
        score -= 10

    efficiency = bundle.get("efficiency")
    if isinstance(efficiency, Mapping) and _is_number(efficiency.get("value")):
        if not 0 <= efficiency["value"] <= 100:
            invalid.append(InvalidValue("efficiency", "Must be 0-100%"))
            score -= 10

    rating = bundle.get("rating")
    if rating and rating not in VALID_RATINGS:
        invalid.append(InvalidValue("rating", f"Must be one of: {', '.join(VALID_RATINGS)}"))
        score -= 10

    for name in BUNDLE_METRIC_FIELDS:
        metric = bundle.get(name)
        if not isinstance(metric, Mapping):
            continue
        if not _is_number(metric.get("value")):
            invalid.append(InvalidValue(f"{name}.value", "Must be a number"))
            score -= 5
        if not all(metric.get(key) for key in ("id", "name", "unit", "source")):
            warnings.append(f"{name} missing some optional fields")
            score -= 2

    domain_key = benchmarks.resolve_domain(domain, REQUIRED_METRICS_BY_DOMAIN)
    metric_ids = [
        str(item.get("id")).lower()
        for item in [bundle.get("primaryCostMetric"), bundle.get("efficiency"), *(bundle.get("secondaryMetrics") or [])]
        if isinstance(item, Mapping) and item.get("id")
    ]
    required_metrics = REQUIRED_METRICS_BY_DOMAIN.get(domain_key, REQUIRED_METRICS_BY_DOMAIN["general"])
    for required in required_metrics[:3]:
        if not any(required.lower() in metric_id for metric_id in metric_ids):
            warnings.append(f"Domain metric '{required}' not found")
            score -= 3

    score = max(0, score)
    return BundleValidation(
        is_valid=not missing and not invalid and score >= 60,
        score=score,
        missing_required=missing,
        invalid_values=invalid,
        warnings=warnings,
    )


def sanity_summary(results: Iterable[SanityCheckResult]) -> dict[str, Any]:
    items = list(results)
    return {
        "total": len(items),
        "passed": sum(1 for r in items if r.action == "pass"),
        "warned": sum(1 for r in items if r.action == "warn"),
        "rejected": sum(1 for r in items if r.action == "reject"),
        "warnings": [f"{r.metric_id}: {r.message}" for r in items if r.action == "warn"],
        "rejections": [f"{r.metric_id}: {r.message}" for r in items if r.action == "reject"],
    }


def format_sanity_results(results: Iterable[SanityCheckResult]) -> str:
    items = list(results)
    summary = sanity_summary(items)
    lines = [
        f"Sanity checks: {summary['passed']} passed, {summary['warned']} warned, {summary['rejected']} rejected",
    ]
    for item in items:
        if item.action == "pass":
            continue
        line = f"- [{item.action.upper()}] {item.metric_id}: {item.message}"
        if item.action == "reject" and item.suggested_value is not None:
            line = f"{line} (suggested: {item.suggested_value:g})"
        lines.append(line)
    return "\n".join(lines)


@dataclass
class OutputValidation:
    stage_id: str
    passed: bool
    score: int
    has_standardized_metrics: bool
    bundle: Optional[BundleValidation] = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def validate_output(stage_id: str, output: StageOutput, domain: str, *, logger: Any = None) -> OutputValidation:
    warnings: list[str] = []
    errors: list[str] = []
    total = 0.0
    max_score = 30.0

    missing_fields = [name for name in ("stage_id", "stage_name", "status") if not getattr(output, name, None)]
    if output.content is None:
        missing_fields.append("content")
    if not missing_fields:
        total += 10
    else:
        errors.append(f"Missing required fields: {', '.join(missing_fields)}")
    if output.sections:
        total += 10
    if isinstance(output.content, (Mapping, list)):
        total += 10

    content = output.content if isinstance(output.content, Mapping) else {}
    bundle_block = content.get("standardizedMetrics")
    has_bundle = isinstance(bundle_block, Mapping)
    bundle = None
    max_score += 20
    if has_bundle:
        total += 20
        bundle = validate_bundle(bundle_block, domain)
        max_score += 30
        total += bundle.score / 100 * 30
        if not bundle.is_valid:
            warnings.extend(bundle.warnings)
            errors.extend(f"Missing required metric: {name}" for name in bundle.missing_required)
            errors.extend(f"Invalid value for {item.field}: {item.reason}" for item in bundle.invalid_values)
    else:
        warnings.append("No standardizedMetrics block found - using fallback extraction")

    if output.status == STAGE_COMPLETE:
        for metric_id, result in extract_metrics(stage_id, metric_ids_for_stage(stage_id), output, logger=logger).items():
            max_score += 5
            if not result.success:
                warnings.append(f"Could not extract {metric_id}")
                continue
            total += 3
            bench = benchmarks.lookup(domain, metric_id)
            value = result.value
            if bench is None or not _is_number(value) or bench.min <= value <= bench.max:
                total += 2
            else:
                warnings.append(f"{metric_id} value {value} outside expected range {bench.min:g}-{bench.max:g}")

    score = round(total / max_score * 100) if max_score else 0
    report = OutputValidation(
        stage_id=stage_id,
        passed=score >= 70 and not errors,
        score=score,
        has_standardized_metrics=has_bundle,
        bundle=bundle,
        warnings=warnings,
        errors=errors,
    )
    if logger is not None:
        logger.log_validation(stage_id, "output", report.passed, report.score, errors=errors, warnings=warnings)
    return report
