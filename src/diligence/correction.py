"""Benchmark normalisation for CAPEX and OPEX breakdowns.

A breakdown whose per-kW total falls far outside the domain benchmark is
pulled to the benchmark median by one scalar applied to every line item and
every aggregation level, so the shares between items stay exactly the same.
"""

from __future__ import annotations

import copy
import math
import sys
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence

from .config import CorrectionMode
from .models import BenchmarkRange, DomainBenchmarks

# level -> (line items summed into the level total, list-valued item field)
CAPEX_LEVELS: Mapping[str, tuple[tuple[str, ...], Optional[str]]] = MappingProxyType(
    {
        "bec": ((), "equipment"),
        "epcc": (("engineering", "procurement", "construction", "commissioning"), None),
        "tpc": (("directCosts", "indirectCosts", "contingency"), None),
        "toc": (("tpc", "ownersCosts", "financingCosts"), None),
        "tasc": (("toc", "escalation", "interestDuringConstruction"), None),
    }
)
OPEX_LEVELS: Mapping[str, tuple[tuple[str, ...], Optional[str]]] = MappingProxyType(
    {
        "fixedOM": (("labor", "maintenance", "insurance", "propertyTax", "other"), None),
    }
)

CAPEX_TOLERANCE = 2.0
OPEX_TOLERANCE = 1.5


def _num(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


@dataclass
class CorrectionOutcome:
    breakdown: Any
    applied: bool
    factor: Optional[float] = None
    normalized_before: Optional[float] = None
    normalized_after: Optional[float] = None
    issues: list[str] = field(default_factory=list)
    message: str = ""


def _level_items(level: Mapping[str, Any], items: Sequence[str], list_field: Optional[str]) -> list[float]:
    values = [v for v in (_num(level.get(name)) for name in items) if v is not None]
    if list_field:
        for entry in level.get(list_field) or []:
            if isinstance(entry, Mapping):
                cost = _num(entry.get("cost"))
                if cost is not None:
                    values.append(cost)
    return values


def check_consistency(
    breakdown: Any,
    *,
    levels: Mapping[str, tuple[tuple[str, ...], Optional[str]]] = CAPEX_LEVELS,
    rel_tol: float = 0.01,
) -> list[str]:
    """Every level total must equal the sum of its line items."""
    if not isinstance(breakdown, Mapping):
        return ["breakdown is not an object"]
    problems: list[str] = []
    for name, (items, list_field) in levels.items():
        level = breakdown.get(name)
        if not isinstance(level, Mapping):
            continue
        total = _num(level.get("total"))
        parts = _level_items(level, items, list_field)
        if total is None or not parts:
            continue
        summed = sum(parts)
        if not math.isclose(summed, total, rel_tol=rel_tol, abs_tol=1e-6):
            problems.append(f"{name}: line items sum to {summed:,.2f} but total is {total:,.2f}")
    return problems


def correction_factor(normalized_value: float, benchmark: BenchmarkRange, tolerance: float) -> Optional[float]:
    if normalized_value is None or normalized_value <= 0:
        return None
    if benchmark.min / tolerance <= normalized_value <= benchmark.max * tolerance:
        return None
    return benchmark.median / normalized_value


def scale_breakdown(
    breakdown: Mapping[str, Any],
    factor: float,
    *,
    keys: Mapping[str, tuple[tuple[str, ...], Optional[str]]],
) -> dict[str, Any]:
    scaled = copy.deepcopy(dict(breakdown))
    for name, (items, list_field) in keys.items():
        level = scaled.get(name)
        if not isinstance(level, dict):
            continue
        for item in (*items, "total"):
            value = _num(level.get(item))
            if value is not None:
                level[item] = value * factor
        if list_field:
            for entry in level.get(list_field) or []:
                if isinstance(entry, dict) and _num(entry.get("cost")) is not None:
                    entry["cost"] = entry["cost"] * factor
    return scaled


def _warn(message: str) -> None:
    print(f"[warn] {message}", file=sys.stderr)


def normalize_capex(
    capex: Any,
    *,
    capacity_kw: float,
    benchmarks: DomainBenchmarks,
    mode: CorrectionMode = CorrectionMode.LENIENT,
    tolerance: float = CAPEX_TOLERANCE,
) -> CorrectionOutcome:
    if not isinstance(capex, Mapping):
        return CorrectionOutcome(capex, False, message="No CAPEX breakdown")
    tasc = capex.get("tasc")
    total = _num(tasc.get("total")) if isinstance(tasc, Mapping) else None
    if total is None or capacity_kw <= 0:
        return CorrectionOutcome(capex, False, message="No TASC total to normalise")
    per_kw = total / capacity_kw
    issues = check_consistency(capex, levels=CAPEX_LEVELS)
    if issues:
        return CorrectionOutcome(
            capex,
            False,
            normalized_before=per_kw,
            issues=issues,
            message="CAPEX breakdown is not self-consistent; correction skipped",
        )
    factor = correction_factor(per_kw, benchmarks.capex, tolerance)
    if factor is None:
        return CorrectionOutcome(capex, False, normalized_before=per_kw, message="CAPEX within benchmark tolerance")
    bench = benchmarks.capex
    deviation = (
        f"CAPEX {per_kw:,.0f} {benchmarks.capex_unit} outside "
        f"{bench.min:g}-{bench.max:g} x{tolerance:g} (median {bench.median:g})"
    )
    if CorrectionMode.parse(mode) is not CorrectionMode.STRICT:
        _warn(f"{deviation}; left unchanged (lenient)")
        return CorrectionOutcome(capex, False, factor=factor, normalized_before=per_kw, message=deviation)
    scaled = scale_breakdown(capex, factor, keys=CAPEX_LEVELS)
    _warn(f"{deviation}; scaled by {factor:.3f}")
    return CorrectionOutcome(
        scaled,
        True,
        factor=factor,
        normalized_before=per_kw,
        normalized_after=scaled["tasc"]["total"] / capacity_kw,
        message=f"{deviation}; scaled by {factor:.3f}",
    )


def expected_fixed_opex(benchmarks: DomainBenchmarks, capacity_kw: float) -> Optional[BenchmarkRange]:
    bench = benchmarks.opex_fixed
    if "% of CAPEX" in bench.unit:
        capex_total = benchmarks.capex.median * capacity_kw
        lo, hi, mid = (capex_total * pct / 100 for pct in (bench.min, bench.max, bench.median))
    elif "$/kW-yr" in bench.unit:
        lo, hi, mid = (value * capacity_kw for value in (bench.min, bench.max, bench.median))
    else:
        return None
    return BenchmarkRange(min=lo, max=hi, median=mid, unit="$/year", source=bench.source, year=bench.year)


def _total_annual(opex: Mapping[str, Any]) -> float:
    total = 0.0
    for name in ("fixedOM", "variableOM", "feedstock"):
        level = opex.get(name)
        if isinstance(level, Mapping):
            total += _num(level.get("total")) or 0.0
    return total


def normalize_opex(
    opex: Any,
    *,
    capacity_kw: float,
    benchmarks: DomainBenchmarks,
    mode: CorrectionMode = CorrectionMode.LENIENT,
    tolerance: float = OPEX_TOLERANCE,
) -> CorrectionOutcome:
    if not isinstance(opex, Mapping):
        return CorrectionOutcome(opex, False, message="No OPEX breakdown")
    fixed = opex.get("fixedOM")
    fixed_total = _num(fixed.get("total")) if isinstance(fixed, Mapping) else None
    if fixed_total is None or capacity_kw <= 0:
        return CorrectionOutcome(opex, False, message="No fixed O&M total to normalise")
    expected = expected_fixed_opex(benchmarks, capacity_kw)
    if expected is None:
        return CorrectionOutcome(
            opex,
            False,
            normalized_before=fixed_total,
            message=f"OPEX benchmark unit {benchmarks.opex_fixed.unit!r} not comparable; skipped",
        )
    issues = check_consistency(opex, levels=OPEX_LEVELS)
    if issues:
        return CorrectionOutcome(
            opex,
            False,
            normalized_before=fixed_total,
            issues=issues,
            message="Fixed O&M breakdown is not self-consistent; correction skipped",
        )
    factor = correction_factor(fixed_total, expected, tolerance)
    if factor is None:
        return CorrectionOutcome(opex, False, normalized_before=fixed_total, message="OPEX within benchmark tolerance")
    deviation = (
        f"Fixed O&M ${fixed_total:,.0f}/yr outside ${expected.min:,.0f}-${expected.max:,.0f} "
        f"x{tolerance:g} (median ${expected.median:,.0f})"
    )
    if CorrectionMode.parse(mode) is not CorrectionMode.STRICT:
        _warn(f"{deviation}; left unchanged (lenient)")
        return CorrectionOutcome(opex, False, factor=factor, normalized_before=fixed_total, message=deviation)
    scaled = scale_breakdown(opex, factor, keys=OPEX_LEVELS)
    scaled["totalAnnual"] = _total_annual(scaled)
    _warn(f"{deviation}; scaled by {factor:.3f}")
    return CorrectionOutcome(
        scaled,
        True,
        factor=factor,
        normalized_before=fixed_total,
        normalized_after=scaled["fixedOM"]["total"],
        message=f"{deviation}; scaled by {factor:.3f}",
    )
