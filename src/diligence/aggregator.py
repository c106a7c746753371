"""Fold stage outputs into the final result objects."""

from __future__ import annotations

import datetime as dt
from typing import Any, Iterable, Mapping, Optional

from .errors import ExtractionMiss
from .extraction import extract, require_metric, to_number
from .models import (
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_PARTIAL,
    KeyMetric,
    PipelineInput,
    PipelineResult,
    RapidPipelineResult,
    RedFlagReport,
    ReportSection,
    ResultSummary,
    RunMetadata,
    StageError,
    StageOutput,
    TechnicalRisk,
)
from .stages import TERMINAL_STAGES

SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
_LEVEL_SCORES = {"high": 3, "medium": 2, "low": 1}
MAX_TOP_RISKS = 5
MAX_NEXT_STEPS = 5


def derive_status(successes: int, errors: int, aborted: bool) -> str:
    if aborted or successes == 0:
        return STATUS_FAILED
    if errors == 0:
        return STATUS_COMPLETE
    return STATUS_PARTIAL


def _content(output: Optional[StageOutput]) -> dict[str, Any]:
    if output is None or not isinstance(output.content, dict):
        return {}
    return output.content


def _strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def _summary_from(content: Mapping[str, Any]) -> Optional[ResultSummary]:
    if not content:
        return None
    rating = content.get("assessmentRating")
    rating = rating if isinstance(rating, Mapping) else {}
    next_steps = []
    for item in content.get("recommendations") or []:
        if isinstance(item, Mapping) and item.get("recommendation"):
            next_steps.append(str(item["recommendation"]))
        elif isinstance(item, str) and item.strip():
            next_steps.append(item)
    return ResultSummary(
        key_strengths=_strings(rating.get("keyStrengths")),
        key_risks=_strings(rating.get("keyWeaknesses")),
        next_steps=next_steps[:MAX_NEXT_STEPS],
    )


def _rating(terminal_id: str, output: Optional[StageOutput], logger: Any) -> tuple[Optional[str], Optional[float]]:
    if output is None:
        return None, None
    try:
        rating = require_metric(terminal_id, "overallRating", output, logger=logger)
    except ExtractionMiss as exc:
        if logger is not None:
            logger.error(terminal_id, str(exc))
        rating = None
    score = extract(terminal_id, "ratingScore", output, logger=logger)
    return rating, score.value if score.success else None


def aggregate(
    *,
    input: PipelineInput,
    plan: Iterable[str],
    outputs: Mapping[str, StageOutput],
    errors: list[StageError],
    started_at: str,
    duration: float,
    aborted: bool = False,
    cancelled: bool = False,
    mode: str = "full",
    logger: Any = None,
) -> PipelineResult:
    ordered = [outputs[stage_id] for stage_id in plan if stage_id in outputs]
    sections: list[ReportSection] = [section for output in ordered for section in output.sections]
    terminal_id = TERMINAL_STAGES.get(mode, "final-synthesis")
    terminal = outputs.get(terminal_id)
    rating, rating_score = _rating(terminal_id, terminal, logger)
    successes = len(ordered)
    metadata = RunMetadata(
        started_at=started_at,
        finished_at=dt.datetime.now().isoformat(),
        components_run=successes + len(errors),
        components_successful=successes,
        components_failed=len(errors),
        mode=mode,
        cancelled=cancelled,
    )
    return PipelineResult(
        assessment_id=input.assessment_id,
        status=derive_status(successes, len(errors), aborted),
        sections=sections,
        outputs=ordered,
        rating=rating,
        rating_score=rating_score,
        summary=_summary_from(_content(terminal)),
        errors=list(errors),
        duration=duration,
        metadata=metadata,
    )


def risk_severity(probability: Any, impact: Any) -> str:
    """Severity from a probability x impact product (1-5 scale or high/medium/low)."""

    def score(value: Any) -> float:
        number = to_number(value)
        if number is not None:
            return number
        return _LEVEL_SCORES.get(str(value or "").strip().lower(), 1)

    combined = score(probability) * score(impact)
    if combined >= 9:
        return "critical"
    if combined >= 6:
        return "high"
    if combined >= 3:
        return "medium"
    return "low"


def extract_top_risks(
    claims_output: Optional[StageOutput],
    synthesis_output: Optional[StageOutput],
    red_flags: RedFlagReport,
) -> list[TechnicalRisk]:
    risks: list[TechnicalRisk] = []
    for flag in red_flags.flags:
        risks.append(
            TechnicalRisk(
                id=f"rf-{flag.id}",
                risk=flag.description,
                severity="critical" if flag.severity == "critical" else "high",
                category=flag.category,
                explanation=flag.explanation,
                mitigation=flag.recommendation,
            )
        )
    for item in _content(claims_output).get("validations") or []:
        if not isinstance(item, Mapping):
            continue
        verdict = str(item.get("verdict") or "").lower()
        unsupported = verdict in {"questionable", "implausible"}
        if unsupported or str(item.get("confidence") or "").lower() == "low":
            risks.append(
                TechnicalRisk(
                    id=f"claim-{len(risks)}",
                    risk=f"Unvalidated claim: {item.get('claim') or item.get('claimId')}",
                    severity="high" if unsupported else "medium",
                    category="data",
                    explanation=str(item.get("reasoning") or ""),
                )
            )
    for item in _content(synthesis_output).get("riskMatrix") or []:
        if not isinstance(item, Mapping):
            continue
        probability, impact = item.get("probability"), item.get("impact")
        risks.append(
            TechnicalRisk(
                id=f"synth-{len(risks)}",
                risk=str(item.get("risk") or ""),
                severity=risk_severity(probability, impact),
                category=str(item.get("category") or "technical"),
                explanation=f"Probability: {probability}, Impact: {impact}",
                mitigation=item.get("mitigation"),
            )
        )
    return sorted(risks, key=lambda risk: SEVERITY_ORDER.get(risk.severity, len(SEVERITY_ORDER)))


def traffic_light(
    red_flags: RedFlagReport,
    risks: list[TechnicalRisk],
    trl: int,
    synthesis_output: Optional[StageOutput],
) -> tuple[str, str]:
    critical_flags = [flag for flag in red_flags.flags if flag.severity == "critical"]
    critical_risks = [risk for risk in risks if risk.severity == "critical"]
    high_risks = [risk for risk in risks if risk.severity == "high"]
    if critical_flags:
        joined = "; ".join(flag.description for flag in critical_flags)
        return "RED", f"Critical physics violations detected: {joined}"
    if critical_risks or len(high_risks) >= 3:
        return "RED", f"{len(critical_risks)} critical and {len(high_risks)} high-severity risks identified"
    if high_risks or red_flags.has_red_flags:
        return (
            "YELLOW",
            f"{len(high_risks)} high-severity risks require further investigation. {red_flags.summary}".strip(),
        )
    if trl <= 3:
        return "YELLOW", f"Technology at TRL {trl} - early stage with significant development risk"
    rating = _content(synthesis_output).get("assessmentRating")
    if isinstance(rating, Mapping):
        overall = str(rating.get("overall") or "").lower()
        if overall in {"concerning", "not_recommended"}:
            return "RED", f"Assessment rating: {overall} (score: {rating.get('score')}/100)"
        if overall == "conditional":
            return "YELLOW", f"Assessment rating: conditional (score: {rating.get('score')}/100)"
    return "GREEN", "No critical issues identified. Technology claims are plausible and within physical limits."


def recommend(light: str, red_flags: RedFlagReport, risks: list[TechnicalRisk]) -> tuple[str, str]:
    if light == "RED":
        issues = [flag.description for flag in red_flags.flags if flag.severity == "critical"]
        issues += [risk.risk for risk in risks if risk.severity == "critical"]
        return (
            "DO_NOT_PROCEED",
            f"Critical issues prevent investment: {'; '.join(issues[:3])}. Recommend passing on this opportunity.",
        )
    if light == "YELLOW":
        concerns = [risk.risk for risk in risks if risk.severity == "high"]
        return (
            "PROCEED_WITH_CAUTION",
            "Technology shows promise but requires deeper diligence on: "
            f"{'; '.join(concerns[:3])}. Recommend full technical assessment before investment decision.",
        )
    return (
        "PROCEED",
        "Technology claims are validated within physical limits. "
        "Recommend proceeding to full due diligence and commercial evaluation.",
    )


def executive_summary(
    input_data: PipelineInput,
    light: str,
    trl: int,
    risks: list[TechnicalRisk],
    recommendation: str,
    synthesis_output: Optional[StageOutput],
) -> str:
    verdict = {"GREEN": "PASS", "YELLOW": "CONDITIONAL"}.get(light, "FAIL")
    critical = sum(1 for risk in risks if risk.severity == "critical")
    high = sum(1 for risk in risks if risk.severity == "high")
    lines = [
        f"**Quick TRL Assessment: {verdict}**",
        "",
        f"**Technology:** {input_data.title}",
        f"**TRL:** {trl}/9",
        f"**Rating:** {light}",
        "",
        f"**Risk Summary:** {critical} critical, {high} high-severity risks identified.",
        "",
    ]
    if risks:
        lines.append("**Top Risks:**")
        lines.extend(f"- [{risk.severity.upper()}] {risk.risk}" for risk in risks[:3])
        lines.append("")
    lines.append(f"**Recommendation:** {recommendation.replace('_', ' ')}")
    synthesis_summary = _content(synthesis_output).get("executiveSummary")
    if isinstance(synthesis_summary, str) and synthesis_summary.strip():
        lines.extend(["", f"**Synthesis:** {synthesis_summary.strip()}"])
    return "\n".join(lines) + "\n"


def _metric_entries(content: Mapping[str, Any]) -> list[tuple[str, Mapping[str, Any]]]:
    overview = content.get("overview")
    raw = overview.get("performanceMetrics") if isinstance(overview, Mapping) else None
    if raw is None:
        raw = content.get("performanceMetrics")
    if isinstance(raw, Mapping):
        return [(str(name), data) for name, data in raw.items() if isinstance(data, Mapping)]
    if isinstance(raw, list):
        return [(str(item.get("name") or f"metric-{idx + 1}"), item) for idx, item in enumerate(raw) if isinstance(item, Mapping)]
    return []


def extract_key_metrics(technology_output: Optional[StageOutput]) -> list[KeyMetric]:
    metrics: list[KeyMetric] = []
    for name, data in _metric_entries(_content(technology_output)):
        unit = str(data.get("unit") or "")
        value = to_number(data.get("value"))
        bench = data.get("benchmark")
        bench_value = to_number(bench.get("value")) if isinstance(bench, Mapping) else to_number(bench)
        status = "no_benchmark"
        benchmark_text = None
        if bench_value is not None:
            source = bench.get("source") if isinstance(bench, Mapping) else None
            benchmark_text = f"{bench_value:g} {unit}".strip() + (f" ({source})" if source else "")
            if value is not None and value > bench_value * 1.1:
                status = "above_benchmark"
            elif value is not None and value < bench_value * 0.9:
                status = "below_benchmark"
            elif value is not None:
                status = "within_range"
        metrics.append(
            KeyMetric(
                name=name,
                value=f"{data.get('value')} {unit}".strip(),
                status=status,
                benchmark=benchmark_text,
            )
        )
    return metrics


def aggregate_rapid(
    *,
    input: PipelineInput,
    plan: Iterable[str],
    outputs: Mapping[str, StageOutput],
    errors: list[StageError],
    started_at: str,
    duration: float,
    red_flags: RedFlagReport,
    aborted: bool = False,
    cancelled: bool = False,
    logger: Any = None,
) -> RapidPipelineResult:
    base = aggregate(
        input=input,
        plan=plan,
        outputs=outputs,
        errors=errors,
        started_at=started_at,
        duration=duration,
        aborted=aborted,
        cancelled=cancelled,
        mode="rapid",
        logger=logger,
    )
    technology = outputs.get("technology-deep-dive")
    synthesis = outputs.get("rapid-synthesis")
    trl_block = _content(technology).get("trlAssessment")
    trl_block = trl_block if isinstance(trl_block, Mapping) else {}
    trl_value = to_number(trl_block.get("currentTRL"))
    trl = int(trl_value) if trl_value and 1 <= trl_value <= 9 else 3
    risks = extract_top_risks(outputs.get("claims-validation"), synthesis, red_flags)
    light, justification = traffic_light(red_flags, risks, trl, synthesis)
    recommendation, rationale = recommend(light, red_flags, risks)
    return RapidPipelineResult(
        assessment_id=base.assessment_id,
        status=base.status,
        sections=base.sections,
        outputs=base.outputs,
        rating=base.rating,
        rating_score=base.rating_score,
        summary=base.summary,
        errors=base.errors,
        duration=base.duration,
        metadata=base.metadata,
        traffic_light=light,
        rating_justification=justification,
        trl=trl,
        trl_justification=str(trl_block.get("justification") or "Unable to determine TRL"),
        trl_confidence=str(trl_block.get("confidence") or "low"),
        top_risks=risks[:MAX_TOP_RISKS],
        red_flags=red_flags,
        recommendation=recommendation,
        recommendation_rationale=rationale,
        executive_summary=executive_summary(input, light, trl, risks, recommendation, synthesis),
        key_metrics=extract_key_metrics(technology),
    )
