"""Fast plausibility screen run ahead of the rapid assessment.

Works only on the submitted claims and description; no generation calls.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Optional

from .models import PipelineInput, RedFlag, RedFlagReport


@dataclass(frozen=True)
class EfficiencyLimit:
    limit: float
    kind: str
    description: str


@dataclass(frozen=True)
class IntensityLimit:
    minimum: float
    unit: str
    description: str


EFFICIENCY_LIMITS: dict[str, EfficiencyLimit] = {
    "solar_single": EfficiencyLimit(33.7, "Shockley-Queisser", "Single junction solar cell"),
    "solar_tandem": EfficiencyLimit(47, "Shockley-Queisser", "Tandem/multi-junction solar"),
    "solar_perovskite": EfficiencyLimit(33.7, "Shockley-Queisser", "Single junction perovskite"),
    "solar_perovskite_tandem": EfficiencyLimit(47, "Thermodynamic", "Perovskite-silicon tandem"),
    "wind": EfficiencyLimit(59.3, "Betz", "Wind turbine power coefficient"),
    "electrolyzer_pem": EfficiencyLimit(100, "Thermoneutral", "PEM electrolyzer (HHV basis)"),
    "electrolyzer_alkaline": EfficiencyLimit(100, "Thermoneutral", "Alkaline electrolyzer (HHV basis)"),
    "electrolyzer_soec": EfficiencyLimit(120, "Thermoneutral", "SOEC with thermal input"),
    "battery_lithium": EfficiencyLimit(99, "Coulombic", "Li-ion round-trip efficiency"),
    "battery_flow": EfficiencyLimit(85, "Practical", "Flow battery (pumping losses)"),
    "battery_solid_state": EfficiencyLimit(99, "Coulombic", "Solid-state battery"),
    "csp": EfficiencyLimit(45, "Carnot", "CSP power block"),
    "geothermal": EfficiencyLimit(25, "Carnot", "Geothermal power"),
    "nuclear": EfficiencyLimit(45, "Carnot", "Nuclear steam cycle"),
    "fuel_cell_pem": EfficiencyLimit(83, "Thermodynamic", "PEM fuel cell (LHV)"),
    "fuel_cell_sofc": EfficiencyLimit(90, "Thermodynamic", "Solid oxide fuel cell"),
    "generic": EfficiencyLimit(100, "Second Law", "Generic efficiency limit"),
}

ENERGY_INTENSITY_LIMITS: dict[str, IntensityLimit] = {
    "hydrogen_electrolysis": IntensityLimit(39.4, "kWh/kg", "Hydrogen production (HHV)"),
    "hydrogen_electrolysis_nm3": IntensityLimit(3.54, "kWh/Nm3", "Hydrogen production (HHV)"),
    "dac": IntensityLimit(178, "kWh/tonne", "Direct air capture (Gibbs minimum)"),
    "ammonia": IntensityLimit(7400, "kWh/tonne", "Green ammonia synthesis"),
    "steel_dri": IntensityLimit(3000, "kWh/tonne", "Direct reduced iron"),
}

COST_BENCHMARKS_2024: dict[str, tuple[float, float, str]] = {
    "solar_utility": (20, 60, "$/MWh"),
    "wind_onshore": (25, 55, "$/MWh"),
    "wind_offshore": (60, 120, "$/MWh"),
    "battery_lithium": (100, 200, "$/kWh"),
    "hydrogen_green": (3, 8, "$/kg"),
    "electrolyzer_pem": (400, 1200, "$/kW"),
    "electrolyzer_alkaline": (300, 800, "$/kW"),
}

CRITICAL_DATA_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "solar": ("efficiency", "degradation", "temperature coefficient", "LCOE"),
    "wind": ("capacity factor", "availability", "LCOE"),
    "battery": ("cycle life", "round-trip efficiency", "energy density", "degradation"),
    "electrolyzer": ("efficiency", "lifetime", "stack cost", "hydrogen purity"),
    "hydrogen": ("production cost", "purity", "storage", "delivery"),
    "fuel cell": ("efficiency", "lifetime", "power density", "degradation"),
    "dac": ("energy consumption", "cost per tonne", "sorbent lifetime"),
    "default": ("efficiency", "cost", "lifetime", "scalability"),
}

LAB_INDICATORS = ("lab scale", "bench scale", "proof of concept", "laboratory", "research stage")
COMMERCIAL_INDICATORS = ("commercial", "production scale", "deployed", "operational", "in operation")
SUPERLATIVES = ("best in class", "industry leading", "world record", "breakthrough")

_EFFICIENCY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%?\s*(?:efficiency|conversion|yield)", re.IGNORECASE)
_ENERGY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:kwh|mwh)/(?:kg|nm3|tonne)", re.IGNORECASE)
_DOLLAR_RE = re.compile(r"\$(\d+(?:\.\d+)?)")
_TIMELINE_RE = re.compile(
    r"(\d+)\s*(?:year|yr)s?\s*(?:to|until|before)\s*(?:commercial|deployment|production)", re.IGNORECASE
)
_COST_RE = re.compile(r"\$?(\d+(?:\.\d+)?)\s*(?:/|\s*per\s*)(?:mwh|kwh|kg|kw)", re.IGNORECASE)
_LEARNING_RE = re.compile(r"(\d+)\s*%?\s*(?:learning rate|cost reduction|decline)", re.IGNORECASE)
_PAYBACK_RE = re.compile(r"(\d+)\s*(?:month|year)s?\s*payback", re.IGNORECASE)


def efficiency_limit(technology: str, claim: str) -> EfficiencyLimit:
    tech = technology.lower()
    if any(token in tech for token in ("solar", "pv", "photovoltaic")):
        if "tandem" in tech or "tandem" in claim or "multi" in tech:
            return EFFICIENCY_LIMITS["solar_tandem"]
        if "perovskite" in tech:
            if "tandem" in claim or "silicon" in claim:
                return EFFICIENCY_LIMITS["solar_perovskite_tandem"]
            return EFFICIENCY_LIMITS["solar_perovskite"]
        return EFFICIENCY_LIMITS["solar_single"]
    if "wind" in tech:
        return EFFICIENCY_LIMITS["wind"]
    if "electrolyzer" in tech or "electrolysis" in tech:
        if "soec" in tech or "solid oxide" in tech:
            return EFFICIENCY_LIMITS["electrolyzer_soec"]
        if "alkaline" in tech:
            return EFFICIENCY_LIMITS["electrolyzer_alkaline"]
        return EFFICIENCY_LIMITS["electrolyzer_pem"]
    if "battery" in tech or "storage" in tech:
        if any(token in tech for token in ("flow", "vanadium", "redox")):
            return EFFICIENCY_LIMITS["battery_flow"]
        if "solid" in tech:
            return EFFICIENCY_LIMITS["battery_solid_state"]
        return EFFICIENCY_LIMITS["battery_lithium"]
    if "csp" in tech or "concentrated solar" in tech:
        return EFFICIENCY_LIMITS["csp"]
    if "geothermal" in tech:
        return EFFICIENCY_LIMITS["geothermal"]
    if "nuclear" in tech:
        return EFFICIENCY_LIMITS["nuclear"]
    if "fuel cell" in tech:
        if "sofc" in tech or "solid oxide" in tech:
            return EFFICIENCY_LIMITS["fuel_cell_sofc"]
        return EFFICIENCY_LIMITS["fuel_cell_pem"]
    return EFFICIENCY_LIMITS["generic"]


def energy_intensity_limit(technology: str, claim: str) -> Optional[IntensityLimit]:
    tech = technology.lower()
    if any(token in tech for token in ("electrolyzer", "electrolysis", "hydrogen")):
        if "nm3" in claim or "nm³" in claim:
            return ENERGY_INTENSITY_LIMITS["hydrogen_electrolysis_nm3"]
        return ENERGY_INTENSITY_LIMITS["hydrogen_electrolysis"]
    if "dac" in tech or "direct air" in tech:
        return ENERGY_INTENSITY_LIMITS["dac"]
    if "ammonia" in tech:
        return ENERGY_INTENSITY_LIMITS["ammonia"]
    if "steel" in tech or "iron" in tech:
        return ENERGY_INTENSITY_LIMITS["steel_dri"]
    return None


def check_thermodynamic_violations(input_data: PipelineInput) -> list[RedFlag]:
    flags: list[RedFlag] = []
    technology = input_data.technology_type.lower()
    for claim in input_data.claims:
        text = claim.text.lower()
        eff_match = _EFFICIENCY_RE.search(text)
        if eff_match:
            value = float(eff_match.group(1))
            limit = efficiency_limit(technology, text)
            if value > limit.limit:
                flags.append(
                    RedFlag(
                        id=f"thermo-eff-{claim.id}",
                        category="thermodynamic",
                        severity="critical" if value > limit.limit * 1.5 else "high",
                        description=f"Efficiency claim ({value:g}%) exceeds {limit.kind} limit ({limit.limit:g}%)",
                        explanation=(
                            f"The claimed efficiency of {value:g}% for {limit.description} exceeds the "
                            f"fundamental {limit.kind} limit of {limit.limit:g}%. This is physically impossible."
                        ),
                        recommendation=(
                            "Clarify the metric definition (e.g., thermal vs electrical efficiency) or reject the claim."
                        ),
                        claim_id=claim.id,
                        value=value,
                        limit=limit.limit,
                    )
                )
            elif value > limit.limit * 0.95:
                flags.append(
                    RedFlag(
                        id=f"thermo-eff-high-{claim.id}",
                        category="thermodynamic",
                        severity="medium",
                        description=f"Efficiency claim ({value:g}%) is very close to theoretical limit ({limit.limit:g}%)",
                        explanation=(
                            f"Claimed {value:g}% efficiency is within 5% of the {limit.kind} limit. "
                            "This is achievable only under ideal lab conditions."
                        ),
                        recommendation="Request experimental data and test conditions. Verify this is achievable at scale.",
                        claim_id=claim.id,
                        value=value,
                        limit=limit.limit,
                    )
                )
        energy_match = _ENERGY_RE.search(text)
        if energy_match:
            value = float(energy_match.group(1))
            intensity = energy_intensity_limit(technology, text)
            if intensity is not None and value < intensity.minimum:
                flags.append(
                    RedFlag(
                        id=f"thermo-energy-{claim.id}",
                        category="thermodynamic",
                        severity="critical",
                        description=(
                            f"Energy intensity ({value:g} {intensity.unit}) below thermodynamic minimum "
                            f"({intensity.minimum:g} {intensity.unit})"
                        ),
                        explanation=(
                            f"The claimed energy consumption of {value:g} {intensity.unit} for "
                            f"{intensity.description} is below the theoretical minimum of "
                            f"{intensity.minimum:g} {intensity.unit} required by thermodynamics."
                        ),
                        recommendation=(
                            "This claim violates thermodynamics. Reject or request clarification on measurement methodology."
                        ),
                        claim_id=claim.id,
                        value=value,
                        limit=intensity.minimum,
                    )
                )
        if "100%" in text and "efficiency" in text and "electrolyzer" not in technology:
            flags.append(
                RedFlag(
                    id=f"thermo-100-{claim.id}",
                    category="thermodynamic",
                    severity="high",
                    description="100% efficiency claim requires scrutiny",
                    explanation=(
                        "Claims of 100% efficiency are only valid for specific metrics (e.g., Faradaic efficiency). "
                        "Most processes have inherent losses."
                    ),
                    recommendation="Clarify which efficiency metric is being claimed (electrical, thermal, Faradaic, etc.).",
                    claim_id=claim.id,
                )
            )
    return flags


def check_trl_mismatches(input_data: PipelineInput) -> list[RedFlag]:
    flags: list[RedFlag] = []
    all_text = " ".join([input_data.description, *(claim.text for claim in input_data.claims)]).lower()
    has_lab = any(token in all_text for token in LAB_INDICATORS)
    has_commercial = any(token in all_text for token in COMMERCIAL_INDICATORS)
    if has_lab and has_commercial:
        flags.append(
            RedFlag(
                id="trl-conflict-1",
                category="trl_mismatch",
                severity="medium",
                description="Conflicting TRL indicators: lab-scale AND commercial claims",
                explanation="The technology is described as both lab-scale and commercially deployed, which is contradictory.",
                recommendation="Clarify the current development stage and deployment status.",
            )
        )
    cost_claims = [
        claim
        for claim in input_data.claims
        if any(token in claim.text.lower() for token in ("cost", "$/", "price"))
    ]
    if has_lab and cost_claims:
        aggressive = False
        for claim in cost_claims:
            match = _DOLLAR_RE.search(claim.text)
            if match and float(match.group(1)) < 50:
                aggressive = True
                break
        if aggressive:
            flags.append(
                RedFlag(
                    id="trl-cost-mismatch",
                    category="trl_mismatch",
                    severity="high",
                    description="Aggressive cost claims for lab-scale technology",
                    explanation=(
                        "Cost projections for early-stage technologies often underestimate scale-up challenges by 2-5x."
                    ),
                    recommendation="Request detailed cost breakdown with contingencies appropriate for TRL level.",
                )
            )
    timeline = _TIMELINE_RE.search(all_text)
    if timeline and has_lab:
        years = int(timeline.group(1))
        if years < 3:
            flags.append(
                RedFlag(
                    id="trl-timeline",
                    category="timeline",
                    severity="medium",
                    description=f"Aggressive timeline: {years} years from lab to commercial for early-stage tech",
                    explanation="Lab-to-commercial transitions typically take 5-10+ years for hardware technologies.",
                    recommendation="Request detailed development roadmap with milestones and risk assessment.",
                )
            )
    return flags


def check_benchmark_outliers(input_data: PipelineInput) -> list[RedFlag]:
    flags: list[RedFlag] = []
    technology = input_data.technology_type.lower()
    for claim in input_data.claims:
        text = claim.text.lower()
        for key, (low, high, unit) in COST_BENCHMARKS_2024.items():
            if key.replace("_", " ", 1) not in technology and key.replace("_", "", 1) not in technology:
                continue
            match = _COST_RE.search(text)
            if not match:
                continue
            value = float(match.group(1))
            per = unit.split("/")[1]
            if value < low * 0.5:
                flags.append(
                    RedFlag(
                        id=f"benchmark-cost-{claim.id}",
                        category="benchmark_outlier",
                        severity="high",
                        description=f"Cost claim (${value:g}/{per}) is 50%+ below industry benchmarks",
                        explanation=(
                            f"Industry benchmark range is {low:g}-{high:g} {unit}. "
                            f"A claim of ${value:g} requires extraordinary evidence."
                        ),
                        recommendation="Request detailed cost breakdown, supplier quotes, and learning curve assumptions.",
                        claim_id=claim.id,
                        value=value,
                        limit=low,
                    )
                )
            elif value < low * 0.8:
                flags.append(
                    RedFlag(
                        id=f"benchmark-cost-low-{claim.id}",
                        category="benchmark_outlier",
                        severity="medium",
                        description=f"Cost claim (${value:g}/{per}) is 20%+ below industry benchmarks",
                        explanation=(
                            f"This cost is optimistic relative to industry benchmarks of {low:g}-{high:g} {unit}."
                        ),
                        recommendation="Verify cost assumptions and request sensitivity analysis.",
                        claim_id=claim.id,
                        value=value,
                        limit=low,
                    )
                )
        if any(token in text for token in SUPERLATIVES) and not re.search(r"\d+", text):
            label = "best in class" if "best" in text else "breakthrough"
            flags.append(
                RedFlag(
                    id=f"benchmark-vague-{claim.id}",
                    category="benchmark_outlier",
                    severity="medium",
                    description="Superlative claim without specific metrics",
                    explanation=f'Claims of "{label}" performance should be backed by specific, verifiable metrics.',
                    recommendation="Request specific performance metrics and third-party validation.",
                    claim_id=claim.id,
                )
            )
    return flags


def check_missing_critical_data(input_data: PipelineInput) -> list[RedFlag]:
    flags: list[RedFlag] = []
    technology = input_data.technology_type.lower()
    requirements = CRITICAL_DATA_REQUIREMENTS["default"]
    for key, reqs in CRITICAL_DATA_REQUIREMENTS.items():
        if key != "default" and key in technology:
            requirements = reqs
            break
    claim_text = " ".join(claim.text.lower() for claim in input_data.claims)
    missing = []
    for requirement in requirements:
        variations = (requirement, requirement.replace(" ", "-", 1), requirement.replace(" ", "_", 1))
        if not any(v.lower() in claim_text for v in variations):
            missing.append(requirement)
    if missing:
        joined = ", ".join(missing)
        flags.append(
            RedFlag(
                id="missing-data",
                category="missing_data",
                severity="high" if len(missing) >= 3 else "medium",
                description=f"Missing critical data: {joined}",
                explanation=(
                    f"For {input_data.technology_type}, the following metrics are typically critical for "
                    f"evaluation but were not found in claims: {joined}."
                ),
                recommendation="Request data for missing critical parameters before proceeding with assessment.",
            )
        )
    unsourced = [claim for claim in input_data.claims if not claim.source or claim.source == "unknown"]
    if unsourced and len(unsourced) / len(input_data.claims) > 0.5:
        flags.append(
            RedFlag(
                id="missing-sources",
                category="missing_data",
                severity="medium",
                description=f"{len(unsourced)} of {len(input_data.claims)} claims lack source attribution",
                explanation="More than half of the claims cannot be traced to a source document.",
                recommendation="Request source documentation for key technical claims.",
            )
        )
    return flags


def check_economic_impossibilities(input_data: PipelineInput) -> list[RedFlag]:
    flags: list[RedFlag] = []
    for claim in input_data.claims:
        text = claim.text.lower()
        if "negative" in text and "cost" in text and "carbon" not in text and "externality" not in text:
            flags.append(
                RedFlag(
                    id=f"econ-negative-{claim.id}",
                    category="economic",
                    severity="high",
                    description="Negative cost claim requires clarification",
                    explanation="Negative production costs are unusual outside of carbon credit or externality contexts.",
                    recommendation="Clarify the economic model and revenue sources.",
                    claim_id=claim.id,
                )
            )
        learning = _LEARNING_RE.search(text)
        if learning:
            rate = float(learning.group(1))
            if rate > 30:
                flags.append(
                    RedFlag(
                        id=f"econ-learning-{claim.id}",
                        category="economic",
                        severity="medium",
                        description=f"Learning rate of {rate:g}% is above historical norms",
                        explanation=(
                            "Historical technology learning rates typically range from 10-25%. "
                            "A rate above 30% is exceptional."
                        ),
                        recommendation=(
                            "Request justification for learning rate assumptions with comparable technology examples."
                        ),
                        claim_id=claim.id,
                        value=rate,
                    )
                )
        payback = _PAYBACK_RE.search(text)
        if payback:
            amount = float(payback.group(1))
            in_months = "month" in text
            years = amount / 12 if in_months else amount
            if years < 1:
                period = f"{amount:g} months" if in_months else f"{amount:g} years"
                flags.append(
                    RedFlag(
                        id=f"econ-payback-{claim.id}",
                        category="economic",
                        severity="medium",
                        description=f"Payback period of {period} is unusually short",
                        explanation=(
                            "Sub-1-year payback for capital-intensive clean energy projects is unusual without subsidies."
                        ),
                        recommendation=(
                            "Verify payback calculation includes all capital costs and realistic revenue assumptions."
                        ),
                        claim_id=claim.id,
                    )
                )
    return flags


def summarize_flags(flags: list[RedFlag]) -> str:
    if not flags:
        return "No red flags detected. All claims appear within physical and economic bounds."
    parts = []
    for severity in ("critical", "high", "medium"):
        count = sum(1 for flag in flags if flag.severity == severity)
        if count:
            parts.append(f"{count} {severity}")
    return f"Detected {', '.join(parts)} severity red flag(s). Review required before proceeding."


def detect_red_flags(input_data: PipelineInput) -> RedFlagReport:
    started = time.perf_counter()
    flags = [
        *check_thermodynamic_violations(input_data),
        *check_trl_mismatches(input_data),
        *check_benchmark_outliers(input_data),
        *check_missing_critical_data(input_data),
        *check_economic_impossibilities(input_data),
    ]
    return RedFlagReport(
        has_red_flags=bool(flags),
        flags=flags,
        summary=summarize_flags(flags),
        execution_ms=(time.perf_counter() - started) * 1000,
    )


def skipped_report() -> RedFlagReport:
    return RedFlagReport(has_red_flags=False, flags=[], summary="Skipped", execution_ms=0.0)
