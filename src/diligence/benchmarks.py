"""Read-only industry benchmark tables.

Ranges are used three ways: injected into generation prompts, checked against
generated values, and used as the target median when a cost breakdown is
normalised.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from .models import BenchmarkRange, DomainBenchmarks, TrlBenchmark


def _r(lo: float, hi: float, median: float, unit: str, source: str, year: int = 2024) -> BenchmarkRange:
    return BenchmarkRange(min=lo, max=hi, median=median, unit=unit, source=source, year=year)


DOMAIN_BENCHMARKS: Mapping[str, DomainBenchmarks] = MappingProxyType(
    {
        "hydrogen": DomainBenchmarks(
            capex=_r(600, 1200, 850, "$/kW", "IEA Global Hydrogen Review 2024"),
            capex_unit="$/kW",
            opex_fixed=_r(2, 4, 3, "% of CAPEX", "IRENA Green Hydrogen Cost Reduction 2023", 2023),
            primary_cost=_r(4, 7, 5.5, "$/kg H2", "DOE Hydrogen Shot 2024"),
            efficiency=_r(65, 80, 72, "%", "IRENA 2023", 2023),
            lifetime=_r(60000, 90000, 80000, "hours", "DOE Electrolyzer Targets"),
            secondary=MappingProxyType(
                {
                    "specificConsumption": _r(4.2, 5.5, 4.8, "kWh/Nm3", "IEA 2024"),
                    "stackCost": _r(200, 400, 300, "$/kW", "BloombergNEF 2024"),
                }
            ),
        ),
        "energy-storage": DomainBenchmarks(
            capex=_r(150, 350, 250, "$/kWh", "BloombergNEF Battery Price Survey 2024"),
            capex_unit="$/kWh",
            opex_fixed=_r(1, 3, 2, "% of CAPEX", "NREL ATB 2024"),
            primary_cost=_r(0.05, 0.15, 0.10, "$/kWh", "NREL 2024"),
            efficiency=_r(85, 95, 90, "%", "DOE VTO 2024"),
            lifetime=_r(3000, 8000, 5000, "cycles", "DOE VTO Targets"),
            secondary=MappingProxyType(
                {
                    "energyDensity": _r(200, 500, 300, "Wh/kg", "DOE VTO 2024"),
                    "cycleLife": _r(500, 5000, 2000, "cycles", "Industry data"),
                }
            ),
        ),
        "industrial": DomainBenchmarks(
            capex=_r(1000, 3000, 2000, "$/tonne-yr", "IEA CCUS Report 2024"),
            capex_unit="$/tonne-yr",
            opex_fixed=_r(100, 300, 200, "$/tonne", "IEA 2024"),
            primary_cost=_r(400, 1000, 600, "$/tonne CO2", "National Academies DAC Report"),
            efficiency=_r(80, 95, 90, "%", "IEA 2024"),
            lifetime=_r(20, 30, 25, "years", "Industry estimates"),
            secondary=MappingProxyType(
                {
                    "energyIntensity": _r(1500, 3000, 2000, "kWh/tonne", "IEA 2024"),
                    "captureRate": _r(85, 95, 90, "%", "IEA 2024"),
                }
            ),
        ),
        "clean-energy": DomainBenchmarks(
            capex=_r(800, 1500, 1100, "$/kW", "NREL ATB 2024"),
            capex_unit="$/kW",
            opex_fixed=_r(10, 25, 18, "$/kW-yr", "NREL 2024"),
            primary_cost=_r(25, 60, 40, "$/MWh", "IEA WEO 2024"),
            efficiency=_r(18, 25, 22, "%", "NREL 2024"),
            lifetime=_r(25, 35, 30, "years", "NREL ATB 2024"),
            secondary=MappingProxyType(
                {
                    "capacityFactor": _r(15, 30, 22, "%", "NREL 2024"),
                    "degradationRate": _r(0.3, 0.7, 0.5, "%/year", "NREL 2024"),
                }
            ),
        ),
        "transportation": DomainBenchmarks(
            capex=_r(100, 200, 140, "$/kWh", "BloombergNEF 2024"),
            capex_unit="$/kWh",
            opex_fixed=_r(0.02, 0.05, 0.03, "$/km", "Industry data"),
            primary_cost=_r(0.08, 0.15, 0.12, "$/km", "DOE 2024"),
            efficiency=_r(85, 95, 90, "%", "DOE VTO 2024"),
            lifetime=_r(150000, 300000, 200000, "km", "Industry data"),
        ),
        "waste-to-fuel": DomainBenchmarks(
            capex=_r(3000, 8000, 5000, "$/tonne-yr capacity", "NREL Waste-to-Energy Reviews 2024"),
            capex_unit="$/tonne-yr",
            opex_fixed=_r(150, 350, 220, "$/tonne feedstock", "PNNL HTL Pilot Data"),
            opex_variable=_r(30, 80, 50, "$/tonne feedstock", "HTL process engineering"),
            primary_cost=_r(5, 15, 10, "$/liter biocrude", "NREL TEA for Hydrothermal Liquefaction"),
            efficiency=_r(55, 80, 70, "% energy recovery", "IEA Bioenergy Task 39"),
            lifetime=_r(15, 25, 20, "years", "Industrial process plant estimates"),
            secondary=MappingProxyType(
                {
                    "biocrudeYield": _r(20, 45, 30, "wt% dry feedstock", "PNNL HTL Literature Review"),
                    "biocrudeHHV": _r(30, 38, 34, "MJ/kg", "Biocrude specifications"),
                    "biocharYield": _r(10, 25, 15, "wt% dry feedstock", "PNNL HTL studies"),
                    "steamRequirement": _r(0.8, 2.0, 1.3, "MJ steam/kg feedstock", "HTL process engineering"),
                    "tippingFeeRevenue": _r(30, 80, 55, "$/tonne (revenue)", "MSW gate fees US average"),
                }
            ),
        ),
        "general": DomainBenchmarks(
            capex=_r(500, 2000, 1000, "$/kW", "General estimates"),
            capex_unit="$/kW",
            opex_fixed=_r(2, 5, 3, "% of CAPEX", "General estimates"),
            primary_cost=_r(30, 100, 60, "$/MWh", "General estimates"),
            efficiency=_r(70, 95, 85, "%", "General estimates"),
            lifetime=_r(15, 30, 20, "years", "General estimates"),
        ),
    }
)

DOMAIN_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "electrolyzer": "hydrogen",
        "electrolysis": "hydrogen",
        "pem": "hydrogen",
        "battery": "energy-storage",
        "batteries": "energy-storage",
        "storage": "energy-storage",
        "dac": "industrial",
        "ccs": "industrial",
        "carbon": "industrial",
        "solar": "clean-energy",
        "wind": "clean-energy",
        "pv": "clean-energy",
        "ev": "transportation",
        "vehicle": "transportation",
        "htl": "waste-to-fuel",
        "hydrothermal": "waste-to-fuel",
        "pyrolysis": "waste-to-fuel",
        "gasification": "waste-to-fuel",
        "biocrude": "waste-to-fuel",
        "biofuel": "waste-to-fuel",
        "waste": "waste-to-fuel",
        "msw": "waste-to-fuel",
    }
)


def _t(lo: int, hi: int, typical: int, description: str) -> TrlBenchmark:
    return TrlBenchmark(min=lo, max=hi, typical=typical, description=description)


TRL_BENCHMARKS: Mapping[str, Mapping[str, TrlBenchmark]] = MappingProxyType(
    {
        "hydrogen": {
            "alkaline": _t(8, 9, 9, "Mature commercial technology"),
            "pem": _t(7, 9, 8, "Commercial, scaling rapidly"),
            "soec": _t(5, 7, 6, "Pilot/demo stage, few MW systems deployed"),
            "aem": _t(4, 6, 5, "Lab to pilot scale"),
            "generic": _t(6, 8, 7, "Default for unknown electrolyzer type"),
        },
        "energy-storage": {
            "lithium-ion": _t(9, 9, 9, "Mature commercial technology"),
            "sodium-ion": _t(6, 8, 7, "Early commercial, pilot production"),
            "lfp": _t(9, 9, 9, "Mature commercial technology"),
            "nmc": _t(9, 9, 9, "Mature commercial technology"),
            "flow-battery": _t(6, 8, 7, "Commercial but limited deployment"),
            "solid-state": _t(4, 6, 5, "Pilot production, limited demos"),
            "iron-air": _t(5, 7, 6, "Pilot scale demonstration"),
            "generic": _t(7, 9, 8, "Default for unknown battery type"),
        },
        "industrial": {
            "h2-dri": _t(5, 7, 6, "Pilot scale, HYBRIT demo operational"),
            "green-steel": _t(5, 7, 6, "Pilot to demo scale"),
            "carbon-capture": _t(6, 8, 7, "Commercial at some scales"),
            "dac": _t(5, 7, 6, "Pilot to early commercial"),
            "green-ammonia": _t(6, 8, 7, "Early commercial projects"),
            "green-methanol": _t(5, 7, 6, "Pilot to demo scale"),
            "green-cement": _t(4, 6, 5, "Pilot demonstrations"),
            "generic": _t(5, 7, 6, "Default for industrial decarbonization"),
        },
        "clean-energy": {
            "solar": _t(9, 9, 9, "Mature commercial technology"),
            "wind": _t(9, 9, 9, "Mature commercial technology"),
            "offshore-wind": _t(8, 9, 8, "Commercial, expanding"),
            "floating-offshore": _t(6, 8, 7, "Demo to early commercial"),
            "geothermal": _t(8, 9, 8, "Commercial for conventional"),
            "nuclear": _t(9, 9, 9, "Mature commercial technology"),
            "smr": _t(5, 7, 6, "First commercial projects underway"),
            "fusion": _t(2, 4, 3, "Research/early development"),
            "generic": _t(7, 9, 8, "Default for clean energy"),
        },
        "transportation": {
            "battery-ev": _t(9, 9, 9, "Mature commercial technology"),
            "hydrogen-fcev": _t(7, 9, 8, "Commercial, limited scale"),
            "e-fuels": _t(5, 7, 6, "Pilot to demo scale"),
            "saf": _t(6, 8, 7, "Early commercial production"),
            "generic": _t(7, 8, 7, "Default for transportation"),
        },
        "waste-to-fuel": {
            "htl-msw": _t(5, 7, 6, "MSW HTL at demo scale"),
            "htl-food-waste": _t(5, 7, 6, "Food waste HTL at demo scale"),
            "htl-algae": _t(4, 6, 5, "Algae HTL, pilot stage"),
            "htl-sewage": _t(6, 8, 7, "Sewage sludge HTL, more mature"),
            "pyrolysis": _t(7, 9, 8, "Commercial for some feedstocks"),
            "gasification": _t(7, 9, 8, "Commercial for biomass"),
            "thermal-cracking": _t(8, 9, 9, "Mature refinery technology"),
            "biocrude-upgrading": _t(6, 8, 7, "Hydrotreatment for biocrude"),
            "generic": _t(5, 7, 6, "Default for waste-to-fuel"),
        },
        "general": {
            "generic": _t(5, 8, 6, "Default for unknown technology"),
        },
    }
)

# metric id -> DomainBenchmarks attribute; matched as a substring of the normalised metric id
_PRIMARY_FIELDS: tuple[tuple[str, str], ...] = (
    ("primarycost", "primary_cost"),
    ("capex", "capex"),
    ("opex", "opex_fixed"),
    ("efficiency", "efficiency"),
    ("lifetime", "lifetime"),
    ("lcoh", "primary_cost"),
    ("lcoe", "primary_cost"),
    ("lcos", "primary_cost"),
    ("lcoc", "primary_cost"),
    ("lcof", "primary_cost"),
)


def normalize_domain(domain_id: str) -> str:
    return re.sub(r"[^a-z-]", "", str(domain_id or "").lower())


def resolve_domain(domain_id: str, known: Optional[Mapping[str, object]] = None) -> str:
    """Map a free-form domain or technology label onto a benchmark domain key.

    Exact keys win, then exact aliases, then the first alias contained in the
    label. Unknown labels resolve to ``general``.
    """
    table = DOMAIN_BENCHMARKS if known is None else known
    normalized = normalize_domain(domain_id)
    if normalized in table:
        return normalized
    if normalized in DOMAIN_ALIASES:
        return DOMAIN_ALIASES[normalized]
    for alias, domain in DOMAIN_ALIASES.items():
        if alias in normalized:
            return domain
    return "general"


def get_benchmarks_for_domain(domain_id: str) -> DomainBenchmarks:
    return DOMAIN_BENCHMARKS[resolve_domain(domain_id)]


def lookup(domain_id: str, metric_id: str) -> Optional[BenchmarkRange]:
    benchmarks = get_benchmarks_for_domain(domain_id)
    normalized_metric = re.sub(r"[^a-z]", "", str(metric_id or "").lower())
    if not normalized_metric:
        return None
    for key, attr in _PRIMARY_FIELDS:
        if key in normalized_metric:
            return getattr(benchmarks, attr)
    for key, benchmark in benchmarks.secondary.items():
        if key.lower() in normalized_metric:
            return benchmark
    return None


def get_trl_benchmark(domain_id: str, technology_type: Optional[str] = None) -> Optional[TrlBenchmark]:
    normalized_tech = normalize_domain(technology_type or "generic") or "generic"
    domain_table = TRL_BENCHMARKS[resolve_domain(domain_id, TRL_BENCHMARKS)]
    if normalized_tech in domain_table:
        return domain_table[normalized_tech]
    for key, benchmark in domain_table.items():
        if key in normalized_tech or normalized_tech in key:
            return benchmark
    return domain_table.get("generic")


@dataclass(frozen=True)
class BenchmarkCheck:
    valid: bool
    deviation: float
    corrected_value: Optional[float]
    message: str


def validate_against_benchmark(
    value: float,
    benchmark: BenchmarkRange,
    tolerance: float = 2.0,
) -> BenchmarkCheck:
    tolerance_min = benchmark.min / tolerance
    tolerance_max = benchmark.max * tolerance
    if tolerance_min <= value <= tolerance_max:
        return BenchmarkCheck(True, 0.0, None, "Value within acceptable range")
    if value < tolerance_min:
        deviation = ((tolerance_min - value) / tolerance_min) * -100 if tolerance_min else -100.0
    else:
        deviation = ((value - tolerance_max) / tolerance_max) * 100 if tolerance_max else 100.0
    return BenchmarkCheck(
        valid=False,
        deviation=deviation,
        corrected_value=benchmark.median,
        message=(
            f"Value {value:g} outside range [{tolerance_min:.1f}, {tolerance_max:.1f}] "
            f"(benchmark: {benchmark.min:g}-{benchmark.max:g})"
        ),
    )


def format_benchmarks_for_prompt(domain_id: str) -> str:
    benchmarks = get_benchmarks_for_domain(domain_id)
    lines = ["INDUSTRY BENCHMARKS (use these to constrain your estimates):", ""]
    for label, bench in (
        ("CAPEX", benchmarks.capex),
        ("OPEX", benchmarks.opex_fixed),
        ("PRIMARY COST METRIC", benchmarks.primary_cost),
        ("EFFICIENCY", benchmarks.efficiency),
        ("LIFETIME", benchmarks.lifetime),
    ):
        lines.append(f"{label}: {bench.min:g}-{bench.max:g} {bench.unit} (median: {bench.median:g})")
        lines.append(f"  Source: {bench.source} ({bench.year})")
        lines.append("")
    if benchmarks.secondary:
        lines.append("ADDITIONAL BENCHMARKS:")
        for name, bench in benchmarks.secondary.items():
            lines.append(f"- {name}: {bench.min:g}-{bench.max:g} {bench.unit} (median: {bench.median:g})")
        lines.append("")
    lines.append(
        "IMPORTANT: Your estimates should fall within or near these benchmark ranges. "
        "If your calculated values are significantly outside these ranges, verify your assumptions."
    )
    return "\n".join(lines)
