"""Metric extraction from schema-free stage output trees.

Each (stage, metric) pair has an ordered list of candidate paths. The first
candidate that yields a value passing the metric's validator wins; when none
does, a bounded fuzzy deep search runs over the whole tree.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from .models import ExtractionResult, StageOutput

MAX_SEARCH_DEPTH = 10

VALID_RATINGS = ("BREAKTHROUGH", "PROMISING", "CONDITIONAL", "NOT_RECOMMENDED")
OVERALL_RATINGS = ("promising", "conditional", "concerning", "not_recommended")


@dataclass(frozen=True)
class ById:
    id: str

    def __str__(self) -> str:
        return f"{{id={self.id}}}"


@dataclass(frozen=True)
class ByName:
    name: str

    def __str__(self) -> str:
        return f"{{name={self.name}}}"


@dataclass(frozen=True)
class ByIndex:
    index: int

    def __str__(self) -> str:
        return f"[{self.index}]"


PathSegment = Union[str, ById, ByName, ByIndex]
Path = tuple[PathSegment, ...]


@dataclass(frozen=True)
class ExtractionPath:
    paths: tuple[Path, ...]
    unit: str = ""
    validator: Optional[Callable[[Any], bool]] = None
    transform: Optional[Callable[[float], float]] = None
    default: Any = None


def _is_int(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and float(v).is_integer()


def _valid_trl(v: Any) -> bool:
    return _is_int(v) and 1 <= v <= 9


def _valid_rating(v: Any) -> bool:
    return str(v) in VALID_RATINGS


def _valid_overall(v: Any) -> bool:
    return str(v).lower() in OVERALL_RATINGS


def _percent(v: Any) -> bool:
    return 0 <= v <= 100


def _years_to_hours(v: float) -> float:
    return v * 8760 if v < 100 else v


def _p(*segments: PathSegment) -> Path:
    return tuple(segments)


EXTRACTION_PATHS: Mapping[str, Mapping[str, ExtractionPath]] = MappingProxyType(
    {
        "tea-analysis": {
            "primaryCost": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "primaryCostMetric", "value"),
                    _p("standardizedMetrics", "primaryCostMetric", "value"),
                    _p("content", "financialMetrics", "primary", "lcoe", "value"),
                    _p("content", "financialMetrics", "primary", "lcoh", "value"),
                ),
                unit="$/unit",
                validator=lambda v: 0 < v < 10000,
            ),
            "lcoh": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "primaryCostMetric", "value"),
                    _p("standardizedMetrics", "primaryCostMetric", "value"),
                ),
                unit="$/kg",
                validator=lambda v: 0 < v < 50,
            ),
            "lcoe": ExtractionPath(
                paths=(
                    _p("content", "financialMetrics", "primary", "lcoe", "value"),
                    _p("content", "standardizedMetrics", "primaryCostMetric", "value"),
                ),
                unit="$/MWh",
                validator=lambda v: 0 < v < 500,
            ),
            "lcoc": ExtractionPath(
                paths=(_p("content", "standardizedMetrics", "primaryCostMetric", "value"),),
                unit="$/tonne",
                validator=lambda v: 0 < v < 5000,
            ),
            "efficiency": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "efficiency", "value"),
                    _p("standardizedMetrics", "efficiency", "value"),
                ),
                unit="%",
                validator=_percent,
            ),
            "capex": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "capex", "value"),
                    _p("standardizedMetrics", "capex", "value"),
                    _p("content", "capexBreakdown", "tasc", "total"),
                ),
                unit="$/kW",
                validator=lambda v: v > 0,
            ),
            "opex": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "opex", "value"),
                    _p("standardizedMetrics", "opex", "value"),
                    _p("content", "opexBreakdown", "totalAnnual"),
                ),
                unit="$/year",
                validator=lambda v: v > 0,
            ),
            # NPV can be negative
            "npv": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "npv", "value"),
                    _p("content", "financialMetrics", "primary", "npv", "value"),
                ),
                unit="$",
            ),
            "irr": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "irr", "value"),
                    _p("content", "financialMetrics", "primary", "irr", "value"),
                ),
                unit="%",
                validator=lambda v: -100 <= v <= 500,
            ),
            "lifetime": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "lifetime", "value"),
                    _p("standardizedMetrics", "lifetime", "value"),
                ),
                unit="hours",
                validator=lambda v: v >= 1000,
                transform=_years_to_hours,
            ),
            "trl": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "trl"),
                    _p("standardizedMetrics", "trl"),
                ),
                validator=_valid_trl,
            ),
            "rating": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "rating"),
                    _p("standardizedMetrics", "rating"),
                    _p("content", "rating"),
                ),
                validator=_valid_rating,
            ),
        },
        "performance-simulation": {
            "efficiency": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "efficiency", "value"),
                    _p("content", "keyMetrics", "efficiency", "value"),
                    _p("content", "performanceMetrics", "systemEfficiency"),
                    _p("content", "performanceMetrics", "efficiency"),
                ),
                unit="%",
                validator=_percent,
            ),
            "cycleLife": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "secondaryMetrics", ById("cycle_life"), "value"),
                    _p("content", "degradation", "cycleLife"),
                    _p("content", "performanceMetrics", "cycleLife"),
                    _p("content", "degradationAnalysis", "expectedCycles"),
                ),
                unit="cycles",
                validator=lambda v: v >= 100,
            ),
            "energyDensity": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "secondaryMetrics", ById("energy_density"), "value"),
                    _p("content", "performanceMetrics", "energyDensity"),
                    _p("content", "keyMetrics", "energyDensity", "value"),
                ),
                unit="Wh/kg",
                validator=lambda v: 50 <= v <= 1000,
            ),
            "lifetime": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "lifetime", "value"),
                    _p("content", "degradationAnalysis", "lifetimeProjection", "expectedLifetime"),
                    _p("content", "degradation", "expectedLifetime"),
                ),
                unit="hours",
                validator=lambda v: v >= 1000,
                transform=_years_to_hours,
            ),
            "specificConsumption": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "secondaryMetrics", ById("specific_consumption"), "value"),
                    _p("content", "performanceMetrics", "specificConsumption"),
                    _p("content", "keyMetrics", "specificEnergyConsumption", "value"),
                ),
                unit="kWh/Nm3",
                validator=lambda v: 3 <= v <= 10,
            ),
            "captureEfficiency": ExtractionPath(
                paths=(
                    _p("content", "performanceMetrics", "captureEfficiency"),
                    _p("content", "keyMetrics", "captureRate", "value"),
                ),
                unit="%",
                validator=lambda v: 50 <= v <= 100,
            ),
        },
        "technology-deep-dive": {
            "trl": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "trl"),
                    _p("content", "trl", "currentTRL"),
                    _p("content", "trlAssessment", "currentTRL"),
                    _p("content", "trlAssessment", "level"),
                ),
                validator=_valid_trl,
            ),
            "efficiency": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "efficiency", "value"),
                    _p("content", "overview", "performanceMetrics", ByName("efficiency"), "value"),
                ),
                unit="%",
                validator=_percent,
            ),
        },
        "final-synthesis": {
            "rating": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "rating"),
                    _p("content", "rating"),
                    _p("content", "recommendation", "rating"),
                    _p("content", "overallAssessment", "rating"),
                ),
                validator=_valid_rating,
            ),
            "overallRating": ExtractionPath(
                paths=(
                    _p("content", "assessmentRating", "overall"),
                    _p("content", "overallAssessment", "overall"),
                ),
                validator=_valid_overall,
            ),
            "ratingScore": ExtractionPath(
                paths=(
                    _p("content", "assessmentRating", "score"),
                    _p("content", "overallAssessment", "score"),
                ),
                unit="/100",
                validator=_percent,
            ),
            "trl": ExtractionPath(
                paths=(
                    _p("content", "standardizedMetrics", "trl"),
                    _p("content", "trl"),
                    _p("content", "overallAssessment", "trl"),
                ),
                validator=_valid_trl,
            ),
        },
        "claims-validation": {
            "validationScore": ExtractionPath(
                paths=(
                    _p("content", "overallValidationScore"),
                    _p("content", "summary", "validationScore"),
                ),
                unit="%",
                validator=_percent,
            ),
        },
    }
)

# The rapid synthesis stage produces the same shape as the full synthesis stage.
EXTRACTION_PATHS = MappingProxyType({**EXTRACTION_PATHS, "rapid-synthesis": EXTRACTION_PATHS["final-synthesis"]})

SEARCH_KEYS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "efficiency": ("efficiency", "round_trip_efficiency", "system_efficiency", "conversion_efficiency"),
        "primaryCost": ("lcoh", "lcoe", "lcos", "lcoc", "levelized_cost", "primary_cost"),
        "trl": ("trl", "technology_readiness", "readiness_level"),
        "rating": ("rating", "overall_rating"),
        "capex": ("capex", "capital_cost", "capital_expenditure"),
        "opex": ("opex", "operating_cost", "operating_expenditure"),
        "lifetime": ("lifetime", "lifespan", "service_life", "stack_lifetime"),
        "npv": ("npv", "net_present_value"),
        "irr": ("irr", "internal_rate_of_return"),
        "energyDensity": ("energy_density", "specific_energy", "gravimetric_density"),
        "cycleLife": ("cycle_life", "cycles", "cycle_count"),
        "specificConsumption": ("specific_consumption", "specific_energy_consumption"),
        "captureEfficiency": ("capture_efficiency", "capture_rate"),
        "validationScore": ("validation_score", "overall_validation_score"),
        "lcoh": ("lcoh", "levelized_cost_of_hydrogen"),
        "lcoe": ("lcoe", "levelized_cost_of_energy", "levelized_cost_of_electricity"),
        "lcoc": ("lcoc", "cost_per_tonne", "levelized_cost_of_capture"),
    }
)

_NUMBER_STRIP = re.compile(r"[,$%\s]")
_KEY_STRIP = re.compile(r"[\s_-]")


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = _NUMBER_STRIP.sub("", value)
        match = re.match(r"^[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?", cleaned)
        if not match:
            return None
        try:
            parsed = float(match.group(0))
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _normalize_key(key: str) -> str:
    return _KEY_STRIP.sub("", str(key).lower())


def traverse_path(tree: Any, path: Sequence[PathSegment]) -> Any:
    current = tree
    for segment in path:
        if current is None:
            return None
        if isinstance(segment, str):
            current = current.get(segment) if isinstance(current, Mapping) else None
        elif isinstance(segment, (ById, ByName)):
            if not isinstance(current, list):
                return None
            attr, wanted = ("id", segment.id) if isinstance(segment, ById) else ("name", segment.name)
            current = next(
                (item for item in current if isinstance(item, Mapping) and item.get(attr) == wanted),
                None,
            )
        elif isinstance(segment, ByIndex):
            if not isinstance(current, list) or not -len(current) <= segment.index < len(current):
                return None
            current = current[segment.index]
        else:
            return None
    return current


def _accept(raw: Any, spec: ExtractionPath) -> tuple[bool, Any, Any]:
    """Returns (accepted, value, transformed_value)."""
    if isinstance(raw, str) and spec.validator is not None and to_number(raw) is None:
        try:
            ok = bool(spec.validator(raw))
        except TypeError:
            ok = False
        if ok:
            return True, raw, None
        return False, None, None
    number = to_number(raw)
    if number is None:
        return False, None, None
    if isinstance(raw, int) and not isinstance(raw, bool):
        number = raw
    transformed = spec.transform(number) if spec.transform is not None else number
    try:
        ok = spec.validator is None or bool(spec.validator(transformed))
    except TypeError:
        ok = False
    if not ok:
        return False, None, None
    return True, transformed, (transformed if spec.transform is not None else None)


def _transformed_validator(spec: ExtractionPath) -> Optional[Callable[[Any], bool]]:
    """Validator applied to the transformed value, as on the declared paths."""
    if spec.transform is None:
        return spec.validator
    transform = spec.transform
    validator = spec.validator

    def check(value: Any) -> bool:
        transformed = transform(value)
        return validator is None or bool(validator(transformed))

    return check


def deep_search_value(
    tree: Any,
    search_keys: Sequence[str],
    validator: Optional[Callable[[Any], bool]] = None,
    *,
    max_depth: int = MAX_SEARCH_DEPTH,
) -> tuple[Optional[float], list[str]]:
    keys = [_normalize_key(k) for k in search_keys if k]

    def matches(name: Any) -> bool:
        norm = _normalize_key(name)
        return bool(norm) and any(k in norm for k in keys)

    def ok(value: Optional[float]) -> bool:
        if value is None:
            return False
        try:
            return validator is None or bool(validator(value))
        except TypeError:
            return False

    def search(node: Any, path: list[str], depth: int) -> Optional[tuple[float, list[str]]]:
        if depth > max_depth or node is None:
            return None
        if isinstance(node, Mapping):
            for label_key in ("name", "id", "metric", "label"):
                label = node.get(label_key)
                if isinstance(label, str) and matches(label) and "value" in node:
                    value = to_number(node.get("value"))
                    if ok(value):
                        return value, [*path, "value"]
            entries = [(str(k), v) for k, v in node.items()]
        elif isinstance(node, list):
            entries = [(str(i), v) for i, v in enumerate(node)]
        else:
            return None
        for key, value in entries:
            if not isinstance(node, list) and matches(key):
                if isinstance(value, Mapping) and "value" in value:
                    nested = to_number(value.get("value"))
                    if ok(nested):
                        return nested, [*path, key, "value"]
                scalar = to_number(value) if not isinstance(value, (Mapping, list)) else None
                if ok(scalar):
                    return scalar, [*path, key]
            if isinstance(value, (Mapping, list)):
                found = search(value, [*path, key], depth + 1)
                if found is not None:
                    return found
        return None

    result = search(tree, [], 0)
    if result is None:
        return None, []
    return result


def _as_tree(output: Any) -> Any:
    if isinstance(output, StageOutput):
        return {"content": output.content, "status": output.status, "stageId": output.stage_id}
    return output


def extract(
    stage_id: str,
    metric_id: str,
    output: Any,
    *,
    deep_search: bool = True,
    logger: Any = None,
    table: Optional[Mapping[str, Mapping[str, ExtractionPath]]] = None,
) -> ExtractionResult:
    paths_table = EXTRACTION_PATHS if table is None else table
    spec = paths_table.get(stage_id, {}).get(metric_id)
    if spec is None:
        result = ExtractionResult(
            value=None,
            found_at=None,
            raw_value=None,
            transformed_value=None,
            success=False,
            error=f"No extraction path defined for {stage_id}.{metric_id}",
        )
        if logger is not None:
            logger.log_extraction(stage_id, metric_id, (), result)
        return result
    tree = _as_tree(output)
    result = None
    for path in spec.paths:
        raw = traverse_path(tree, path)
        if raw is None:
            continue
        accepted, value, transformed = _accept(raw, spec)
        if accepted:
            result = ExtractionResult(
                value=value,
                found_at=[str(seg) for seg in path],
                raw_value=raw,
                transformed_value=transformed,
                success=True,
            )
            break
    if result is None and deep_search:
        value, found_at = deep_search_value(tree, SEARCH_KEYS.get(metric_id, (metric_id,)), _transformed_validator(spec))
        if value is not None:
            transformed = spec.transform(value) if spec.transform is not None else None
            result = ExtractionResult(
                value=transformed if transformed is not None else value,
                found_at=found_at,
                raw_value=value,
                transformed_value=transformed,
                success=True,
            )
    if result is None:
        result = ExtractionResult(
            value=spec.default,
            found_at=None,
            raw_value=None,
            transformed_value=None,
            success=False,
            error=f"No valid value found in any path for {metric_id}",
        )
    if logger is not None:
        logger.log_extraction(stage_id, metric_id, spec.paths, result)
    return result


def extract_metrics(
    stage_id: str,
    metric_ids: Sequence[str],
    output: Any,
    *,
    logger: Any = None,
) -> dict[str, ExtractionResult]:
    return {metric_id: extract(stage_id, metric_id, output, logger=logger) for metric_id in metric_ids}


def metric_ids_for_stage(stage_id: str) -> list[str]:
    return list(EXTRACTION_PATHS.get(stage_id, {}))


def require_metric(stage_id: str, metric_id: str, output: Any, *, logger: Any = None) -> Any:
    from .errors import ExtractionMiss

    result = extract(stage_id, metric_id, output, logger=logger)
    if not result.success:
        raise ExtractionMiss(stage_id, metric_id, result.error or "")
    return result.value


_SELECTOR_RE = re.compile(r"^\{(id|name)=(.*)\}$")
_INDEX_RE = re.compile(r"^\[(-?\d+)\]$")


def assign_found_at(tree: Any, found_at: Sequence[str], value: Any) -> bool:
    """Write ``value`` at a path reported in ``ExtractionResult.found_at``."""
    if not found_at:
        return False
    current = tree
    for position, segment in enumerate(found_at):
        last = position == len(found_at) - 1
        if isinstance(current, dict):
            if segment not in current:
                return False
            if last:
                current[segment] = value
                return True
            current = current[segment]
            continue
        if not isinstance(current, list):
            return False
        selector = _SELECTOR_RE.match(segment)
        index_match = _INDEX_RE.match(segment)
        if selector:
            attr, wanted = selector.groups()
            index = next(
                (i for i, item in enumerate(current) if isinstance(item, Mapping) and str(item.get(attr)) == wanted),
                None,
            )
        elif index_match:
            index = int(index_match.group(1))
        elif segment.isdigit():
            index = int(segment)
        else:
            return False
        if index is None or not -len(current) <= index < len(current):
            return False
        if last:
            current[index] = value
            return True
        current = current[index]
    return False
