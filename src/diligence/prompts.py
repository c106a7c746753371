from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Iterable, Mapping

if TYPE_CHECKING:
    from diligence.models import Claim, PipelineInput

MAX_DOCUMENT_CHARS = 4000
MAX_CONTEXT_CHARS = 6000

STANDARDIZED_METRICS_PROMPT_SCHEMA = """Include a "standardizedMetrics" object in your JSON with:
- primaryCostMetric: {id, name, value, unit, source} (e.g. lcoh, lcoe, lcos, lcoc)
- efficiency: {id, name, value, unit, source} (value in percent, 0-100)
- capex: {id, name, value, unit, source}
- opex: {id, name, value, unit, source}
- trl: integer 1-9
- rating: one of BREAKTHROUGH, PROMISING, CONDITIONAL, NOT_RECOMMENDED
- secondaryMetrics: list of {id, name, value, unit, source}
- generatedAt: ISO timestamp
- sourceComponent: the analysis that produced the metrics
All values must be numbers, not strings."""


def _claims_block(claims: Iterable["Claim"]) -> str:
    lines = []
    for claim in claims:
        source = f" (source: {claim.source})" if claim.source else ""
        lines.append(f"- [{claim.id}] {claim.text}{source} [confidence: {claim.confidence}]")
    return "\n".join(lines) if lines else "- (no claims extracted)"


def input_context_block(input_data: "PipelineInput") -> str:
    parts = [
        f"Technology: {input_data.title}",
        f"Technology type: {input_data.technology_type or 'unspecified'}",
        f"Domain: {input_data.domain_id}",
        "",
        "Description:",
        input_data.description or "(none)",
        "",
        "Claims:",
        _claims_block(input_data.claims),
    ]
    if input_data.parameters:
        parts.extend(["", "Parameters:", json.dumps(input_data.parameters, ensure_ascii=False, default=str)])
    if input_data.documents:
        parts.extend(["", "Document excerpts:"])
        budget = MAX_DOCUMENT_CHARS
        for doc in input_data.documents:
            if budget <= 0:
                break
            excerpt = doc[:budget]
            budget -= len(excerpt)
            parts.append(excerpt)
    return "\n".join(parts)


def _prior_block(label: str, content: Any) -> str:
    text = json.dumps(content, ensure_ascii=False, default=str)
    if len(text) > MAX_CONTEXT_CHARS:
        text = text[:MAX_CONTEXT_CHARS] + " ...[truncated]"
    return f"{label}:\n{text}"


def build_technology_prompt(input_data: "PipelineInput") -> str:
    return (
        "You are a technology due-diligence analyst. Assess the technology below: working principle, "
        "key components, performance metrics compared with the state of the art, and its technology "
        "readiness level.\n\n"
        f"{input_context_block(input_data)}\n\n"
        "Respond in JSON with keys: overview {summary, workingPrinciple, performanceMetrics: "
        "[{name, value, unit, benchmark}]}, trlAssessment {currentTRL, justification, confidence, "
        "keyGaps}, competitiveLandscape, technicalRisks: [{risk, severity, explanation}], "
        "standardizedMetrics.\n\n"
        f"{STANDARDIZED_METRICS_PROMPT_SCHEMA}"
    )


def build_claim_validation_prompt(input_data: "PipelineInput", claims: Iterable["Claim"]) -> str:
    return (
        "Validate each claim below against physical limits, published literature and industry data "
        f"for {input_data.technology_type or input_data.domain_id} technology.\n\n"
        f"Claims:\n{_claims_block(claims)}\n\n"
        "Respond in JSON: {\"validations\": [{claimId, verdict (validated|plausible|questionable|"
        "implausible), confidence (high|medium|low), reasoning, redFlags: [string]}]}"
    )


def build_claims_overall_prompt(input_data: "PipelineInput", validations: list[Mapping[str, Any]]) -> str:
    return (
        f"Summarise the claim validation results for {input_data.title}.\n\n"
        f"{_prior_block('Validations', validations)}\n\n"
        "Respond in JSON: {overallValidationScore (0-100), overallCredibility (high|medium|low), "
        "summary, keyConcerns: [string]}"
    )


def build_performance_prompt(input_data: "PipelineInput") -> str:
    return (
        "Simulate the expected operating performance of the technology below: efficiency, degradation, "
        "lifetime and sensitivity to operating conditions.\n\n"
        f"{input_context_block(input_data)}\n\n"
        "Respond in JSON with keys: performanceMetrics, degradationAnalysis {lifetimeProjection}, "
        "sensitivityAnalysis, standardizedMetrics.\n\n"
        f"{STANDARDIZED_METRICS_PROMPT_SCHEMA}"
    )


def build_integration_prompt(input_data: "PipelineInput") -> str:
    return (
        "Assess how the technology below integrates into real systems: balance of plant, grid or "
        "process interfaces, supply chain and infrastructure constraints.\n\n"
        f"{input_context_block(input_data)}\n\n"
        "Respond in JSON with keys: integrationAssessment {summary, complexity (low|medium|high)}, "
        "interfaces, supplyChainRisks, infrastructureRequirements."
    )


def build_tea_prompt(input_data: "PipelineInput", benchmarks_block: str, performance: Any = None) -> str:
    performance_block = f"{_prior_block('Performance simulation', performance)}\n\n" if performance else ""
    return (
        "Perform a techno-economic analysis of the technology below. Build a CAPEX breakdown "
        "(bec {equipment: [{name, cost}], total}, epcc, tpc, toc, tasc with totals in USD), an OPEX "
        "breakdown (fixedOM {labor, maintenance, insurance, propertyTax, other, total}, variableOM "
        "{total}, feedstock {total}, totalAnnual) and financial metrics.\n\n"
        f"{input_context_block(input_data)}\n\n"
        f"{performance_block}"
        f"{benchmarks_block}\n\n"
        "Respond in JSON with keys: capexBreakdown, opexBreakdown, financialMetrics {primary}, "
        "assumptions, standardizedMetrics.\n\n"
        f"{STANDARDIZED_METRICS_PROMPT_SCHEMA}"
    )


def build_improvement_prompt(input_data: "PipelineInput") -> str:
    return (
        "Identify the most valuable improvement opportunities for the technology below, with expected "
        "impact, effort and timeline.\n\n"
        f"{input_context_block(input_data)}\n\n"
        "Respond in JSON: {opportunities: [{title, description, impact (high|medium|low), effort, "
        "timeline}], summary}"
    )


def build_synthesis_prompt(input_data: "PipelineInput", prior: Mapping[str, Any]) -> str:
    blocks = "\n\n".join(_prior_block(label, content) for label, content in prior.items())
    return (
        "Synthesise the due-diligence findings below into an investment assessment.\n\n"
        f"{input_context_block(input_data)}\n\n"
        f"{blocks or 'No prior analyses completed.'}\n\n"
        "Respond in JSON with keys: assessmentRating {overall (promising|conditional|concerning|"
        "not_recommended), score (0-100), keyStrengths: [string], keyWeaknesses: [string]}, "
        "executiveSummary, riskMatrix: [{risk, category, probability (1-5), impact (1-5), mitigation}], "
        "recommendations: [{recommendation, priority}], standardizedMetrics.\n\n"
        f"{STANDARDIZED_METRICS_PROMPT_SCHEMA}"
    )


def build_rapid_synthesis_prompt(
    input_data: "PipelineInput",
    prior: Mapping[str, Any],
    red_flag_summary: str = "",
) -> str:
    blocks = "\n\n".join(_prior_block(label, content) for label, content in prior.items())
    flags = f"Automated red-flag screen: {red_flag_summary}\n\n" if red_flag_summary else ""
    return (
        "Produce a rapid go/no-go screening of the technology below from the analyses provided.\n\n"
        f"{input_context_block(input_data)}\n\n"
        f"{flags}"
        f"{blocks or 'No prior analyses completed.'}\n\n"
        "Respond in JSON with keys: assessmentRating {overall (promising|conditional|concerning|"
        "not_recommended), score (0-100), keyStrengths, keyWeaknesses}, ratingJustification, "
        "riskMatrix: [{risk, category, probability (1-5), impact (1-5), mitigation}], "
        "recommendations: [{recommendation}], executiveSummary."
    )
