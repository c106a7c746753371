"""Concrete assessment stages.

Each stage is a ``StageHandler`` subclass built by the orchestrator through a
``StageDescriptor`` factory: ``handler = descriptor.factory(input, outputs, context)``
followed by ``handler.execute(progress)``. Handlers raise on generator or parse
failure so the orchestrator can retry the stage; they return an ``error``
output only for conditions a retry cannot fix.
"""

from __future__ import annotations

import json
import re
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from . import benchmarks
from .config import PipelineConfig
from .correction import normalize_capex, normalize_opex
from .errors import SanityRejection
from .events import CancellationToken
from .extraction import EXTRACTION_PATHS, assign_found_at, extract, metric_ids_for_stage, to_number
from .generation import GenerationClient, GenerationOptions, parse_json_response
from .models import (
    STAGE_COMPLETE,
    STAGE_ERROR,
    Claim,
    PipelineInput,
    RedFlagReport,
    ReportSection,
    StageDescriptor,
    StageOutput,
)
from .prompts import (
    build_claim_validation_prompt,
    build_claims_overall_prompt,
    build_improvement_prompt,
    build_integration_prompt,
    build_performance_prompt,
    build_rapid_synthesis_prompt,
    build_synthesis_prompt,
    build_tea_prompt,
    build_technology_prompt,
)
from .retry_loop import generate_validated
from .sanity import ensure_plausible, in_range_unit, validate_bundle, validate_trl
from .stages import STAGE_DEPENDENCIES, missing_dependencies, stage_name, stage_order_for

StageProgress = Callable[[float, str], None]


@dataclass(frozen=True)
class StageConfig:
    temperature: float
    reasoning_level: Optional[str] = "medium"
    max_output_tokens: int = 8192


STAGE_CONFIGS: dict[str, StageConfig] = {
    "technology-deep-dive": StageConfig(temperature=0.7),
    "claims-validation": StageConfig(temperature=0.3),
    "performance-simulation": StageConfig(temperature=0.3),
    "system-integration": StageConfig(temperature=0.5),
    "tea-analysis": StageConfig(temperature=0.2),
    "improvement-opportunities": StageConfig(temperature=0.7, reasoning_level="low"),
    "final-synthesis": StageConfig(temperature=0.5),
    "rapid-synthesis": StageConfig(temperature=0.5),
}
DEFAULT_STAGE_CONFIG = StageConfig(temperature=0.5)

VERDICT_SCORES: dict[str, int] = {
    "validated": 100,
    "plausible": 75,
    "questionable": 40,
    "implausible": 10,
}

DEFAULT_CAPACITY_MW = 100.0
_CAPACITY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*MW\b")
_CAPACITY_KEYS = ("capacity_mw", "capacityMW", "capacityMw", "capacity")


@dataclass
class StageContext:
    config: PipelineConfig
    client: GenerationClient
    logger: Any = None
    cancel: Optional[CancellationToken] = None
    mode: str = "full"
    red_flags: Optional[RedFlagReport] = None


def _noop_progress(progress: float, message: str) -> None:
    return None


class StageHandler:
    stage_id = ""
    summary_keys: tuple[str, ...] = ("executiveSummary", "summary")

    def __init__(
        self,
        input_data: PipelineInput,
        outputs: Mapping[str, StageOutput],
        context: StageContext,
    ) -> None:
        self.input = input_data
        self.outputs = outputs
        self.context = context
        self.name = stage_name(self.stage_id, context.mode)
        self.tokens_used = 0
        self._tokens_lock = threading.Lock()

    @property
    def logger(self) -> Any:
        return self.context.logger

    @property
    def options(self) -> GenerationOptions:
        base = STAGE_CONFIGS.get(self.stage_id, DEFAULT_STAGE_CONFIG)
        override = dict(self.context.config.stage_overrides.get(self.stage_id) or {})
        return GenerationOptions(
            temperature=float(override.get("temperature", base.temperature)),
            max_output_tokens=int(override.get("max_output_tokens", base.max_output_tokens)),
            response_format="json",
            reasoning_level=override.get("reasoning_level", base.reasoning_level),
        )

    def check_cancelled(self, where: str) -> None:
        if self.context.cancel is not None:
            self.context.cancel.raise_if_cancelled(where)

    def generate_text(self, prompt: str) -> str:
        self.check_cancelled(f"before {self.stage_id} generation")
        started = time.monotonic()
        try:
            text = self.context.client.generate(prompt, self.options)
        except Exception as exc:
            if self.logger is not None:
                self.logger.log_ai_call(
                    self.stage_id,
                    model=self.context.config.model,
                    latency_ms=(time.monotonic() - started) * 1000,
                    success=False,
                    error=str(exc),
                )
            raise
        usage = getattr(self.context.client, "last_usage", None) or {}
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
        with self._tokens_lock:
            self.tokens_used += prompt_tokens + completion_tokens
        if self.logger is not None:
            self.logger.log_ai_call(
                self.stage_id,
                model=self.context.config.model,
                latency_ms=(time.monotonic() - started) * 1000,
                success=True,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )
        return text

    def generate_json(self, prompt: str) -> Any:
        return parse_json_response(self.generate_text(prompt))

    def generate_with_metrics(self, prompt: str) -> dict[str, Any]:
        domain = self.input.domain_id

        def validate(value: Any):
            bundle = value.get("standardizedMetrics") if isinstance(value, dict) else None
            return validate_bundle(bundle, domain)

        result = generate_validated(
            self.generate_text,
            prompt,
            validate,
            self.context.config.metrics_max_retries,
            logger=self.logger,
            stage_id=self.stage_id,
        )
        content = result.value if isinstance(result.value, dict) else {"result": result.value}
        if result.degraded:
            content["validationWarnings"] = [*result.warnings, *result.missing, *result.invalid]
        return content

    def check_metrics(self, content: dict[str, Any]) -> dict[str, Any]:
        """Sanity-check extracted metrics in place.

        A rejected value is replaced by the range median where it was found;
        an implausible TRL is replaced by the domain's typical level.
        """
        wrapper = {"content": content}
        corrections: list[dict[str, Any]] = []
        domain = self.input.domain_id
        for metric_id in metric_ids_for_stage(self.stage_id):
            result = extract(self.stage_id, metric_id, wrapper, logger=self.logger)
            if not result.success:
                continue
            if metric_id == "trl":
                check = validate_trl(result.value, domain, self.input.technology_type)
                if check.action == "correct" and check.corrected_trl is not None:
                    applied = assign_found_at(wrapper, result.found_at or [], check.corrected_trl)
                    corrections.append(
                        {
                            "metric": metric_id,
                            "original": result.value,
                            "corrected": check.corrected_trl,
                            "applied": applied,
                            "message": check.message,
                        }
                    )
                continue
            value = to_number(result.value)
            if value is None:
                continue
            path_spec = EXTRACTION_PATHS.get(self.stage_id, {}).get(metric_id)
            value = in_range_unit(metric_id, value, path_spec.unit if path_spec is not None else "", domain)
            try:
                ensure_plausible(metric_id, value, domain, logger=self.logger, stage_id=self.stage_id)
            except SanityRejection as exc:
                # transformed values live in different units at the source
                applied = False
                if exc.suggested_value is not None and result.transformed_value is None:
                    applied = assign_found_at(wrapper, result.found_at or [], exc.suggested_value)
                corrections.append(
                    {
                        "metric": metric_id,
                        "original": value,
                        "corrected": exc.suggested_value,
                        "applied": applied,
                        "message": str(exc),
                    }
                )
        if corrections:
            content["sanityCorrections"] = corrections
            for item in corrections:
                if self.logger is not None:
                    self.logger.log(
                        "correction",
                        self.stage_id,
                        f"{item['metric']}: {item['original']} -> {item['corrected']}",
                        **item,
                    )
        return content

    def run(self, progress: StageProgress) -> Any:
        raise NotImplementedError

    def summary_text(self, content: Any) -> str:
        if isinstance(content, Mapping):
            for key in self.summary_keys:
                value = content.get(key)
                if isinstance(value, Mapping):
                    value = value.get("summary")
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return json.dumps(content, ensure_ascii=False, indent=2, default=str)

    def error_output(self, message: str, started: float) -> StageOutput:
        return StageOutput(
            stage_id=self.stage_id,
            stage_name=self.name,
            status=STAGE_ERROR,
            error=message,
            duration=time.monotonic() - started,
            tokens_used=self.tokens_used,
        )

    def execute(self, progress: Optional[StageProgress] = None) -> StageOutput:
        report = progress or _noop_progress
        started = time.monotonic()
        content = self.run(report)
        if isinstance(content, StageOutput):
            return content
        return StageOutput(
            stage_id=self.stage_id,
            stage_name=self.name,
            status=STAGE_COMPLETE,
            content=content,
            sections=[ReportSection(id=self.stage_id, title=self.name, content=self.summary_text(content))],
            duration=time.monotonic() - started,
            tokens_used=self.tokens_used,
        )


class TechnologyDeepDiveHandler(StageHandler):
    stage_id = "technology-deep-dive"
    summary_keys = ("overview", "summary")

    def run(self, progress: StageProgress) -> Any:
        progress(10, "Analyzing technology fundamentals...")
        content = self.generate_with_metrics(build_technology_prompt(self.input))
        progress(80, "Checking reported metrics...")
        self.check_metrics(content)
        progress(100, "Technology analysis complete")
        return content


class ClaimsValidationHandler(StageHandler):
    stage_id = "claims-validation"

    def _validate_claim(self, claim: Claim) -> dict[str, Any]:
        parsed = self.generate_json(build_claim_validation_prompt(self.input, [claim]))
        entry: Any = parsed
        if isinstance(parsed, Mapping) and isinstance(parsed.get("validations"), list) and parsed["validations"]:
            entry = parsed["validations"][0]
        if not isinstance(entry, Mapping):
            entry = {"reasoning": str(entry)}
        validation = dict(entry)
        validation["claimId"] = claim.id
        validation["claim"] = claim.text
        verdict = str(validation.get("verdict") or "questionable").lower()
        validation["verdict"] = verdict if verdict in VERDICT_SCORES else "questionable"
        return validation

    def run(self, progress: StageProgress) -> Any:
        claims = list(self.input.claims)
        progress(5, "Starting claims validation...")
        if not claims:
            progress(100, "No claims to validate")
            return {"validations": [], "overallValidationScore": None, "summary": "No claims provided."}
        progress(10, "Establishing validation methodology...")
        progress(20, "Retrieving industry benchmarks...")
        reference = benchmarks.get_benchmarks_for_domain(self.input.domain_id)
        batch_size = self.context.config.claim_batch_size
        validations: list[dict[str, Any]] = []
        count = len(claims)
        for start in range(0, count, batch_size):
            self.check_cancelled("between claim batches")
            batch = claims[start : start + batch_size]
            progress(
                30 + round(start / count * 50),
                f"Validating claims {start + 1}-{start + len(batch)}/{count}...",
            )
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                validations.extend(pool.map(self._validate_claim, batch))
        progress(85, "Generating overall assessment...")
        overall = self.generate_json(build_claims_overall_prompt(self.input, validations))
        if not isinstance(overall, Mapping):
            overall = {}
        progress(90, "Compiling findings and recommendations...")
        score = round(sum(VERDICT_SCORES[item["verdict"]] for item in validations) / len(validations))
        red_flags = [flag for item in validations for flag in (item.get("redFlags") or []) if isinstance(flag, str)]
        progress(95, "Compiling citations...")
        citations = sorted({claim.source for claim in claims if claim.source})
        progress(100, "Claims validation complete")
        return {
            "validations": validations,
            "overallValidationScore": score,
            "overallCredibility": overall.get("overallCredibility"),
            "summary": overall.get("summary") or f"{len(validations)} claims reviewed.",
            "keyConcerns": list(overall.get("keyConcerns") or []),
            "redFlags": red_flags,
            "benchmarkSource": reference.primary_cost.source,
            "citations": citations,
        }


class PerformanceSimulationHandler(StageHandler):
    stage_id = "performance-simulation"

    def run(self, progress: StageProgress) -> Any:
        progress(10, "Simulating operating performance...")
        content = self.generate_with_metrics(build_performance_prompt(self.input))
        progress(80, "Checking reported metrics...")
        self.check_metrics(content)
        progress(100, "Performance simulation complete")
        return content


class SystemIntegrationHandler(StageHandler):
    stage_id = "system-integration"
    summary_keys = ("integrationAssessment", "summary")

    def run(self, progress: StageProgress) -> Any:
        progress(10, "Assessing system integration...")
        content = self.generate_json(build_integration_prompt(self.input))
        progress(100, "System integration assessment complete")
        return content if isinstance(content, dict) else {"result": content}


def plant_capacity_mw(input_data: PipelineInput) -> float:
    """Plant capacity from parameters, then claims and description, else 100 MW."""
    for key in _CAPACITY_KEYS:
        value = to_number(input_data.parameters.get(key))
        if value is not None and value > 0:
            return value
    for text in [claim.text for claim in input_data.claims] + [input_data.description]:
        match = _CAPACITY_RE.search(text or "")
        if match and float(match.group(1)) > 0:
            return float(match.group(1))
    return DEFAULT_CAPACITY_MW


class TeaAnalysisHandler(StageHandler):
    stage_id = "tea-analysis"
    summary_keys = ("executiveSummary", "summary", "financialMetrics")

    def run(self, progress: StageProgress) -> Any:
        progress(5, "Loading industry benchmarks...")
        domain = self.input.domain_id
        reference = benchmarks.get_benchmarks_for_domain(domain)
        performance = self.outputs.get("performance-simulation")
        prompt = build_tea_prompt(
            self.input,
            benchmarks.format_benchmarks_for_prompt(domain),
            performance.content if performance is not None else None,
        )
        progress(15, "Building cost model...")
        content = self.generate_with_metrics(prompt)
        progress(70, "Normalising cost breakdowns...")
        capacity_kw = plant_capacity_mw(self.input) * 1000
        mode = self.context.config.correction_mode
        corrections: list[dict[str, Any]] = []
        capex = normalize_capex(content.get("capexBreakdown"), capacity_kw=capacity_kw, benchmarks=reference, mode=mode)
        opex = normalize_opex(content.get("opexBreakdown"), capacity_kw=capacity_kw, benchmarks=reference, mode=mode)
        for field_name, metric, outcome, bench in (
            ("capexBreakdown", "capex", capex, reference.capex),
            ("opexBreakdown", "opexFixed", opex, reference.opex_fixed),
        ):
            if outcome.normalized_before is not None and self.logger is not None:
                self.logger.log_benchmark_check(
                    self.stage_id, metric, outcome.normalized_before, bench, outcome.factor is None
                )
            if outcome.applied:
                content[field_name] = outcome.breakdown
            if outcome.applied or outcome.factor is not None or outcome.issues:
                corrections.append(
                    {
                        "metric": metric,
                        "applied": outcome.applied,
                        "factor": outcome.factor,
                        "before": outcome.normalized_before,
                        "after": outcome.normalized_after,
                        "issues": outcome.issues,
                        "message": outcome.message,
                    }
                )
        if corrections:
            content["corrections"] = corrections
        progress(85, "Checking reported metrics...")
        self.check_metrics(content)
        content["capacityMW"] = capacity_kw / 1000
        progress(100, "Techno-economic analysis complete")
        return content


class ImprovementOpportunitiesHandler(StageHandler):
    stage_id = "improvement-opportunities"

    def run(self, progress: StageProgress) -> Any:
        progress(10, "Identifying improvement opportunities...")
        content = self.generate_json(build_improvement_prompt(self.input))
        progress(100, "Improvement analysis complete")
        return content if isinstance(content, dict) else {"opportunities": content}


class FinalSynthesisHandler(StageHandler):
    stage_id = "final-synthesis"

    def prior_outputs(self) -> dict[str, Any]:
        wanted = STAGE_DEPENDENCIES.get(self.stage_id, ())
        return {
            output.stage_name: output.content
            for stage_id, output in self.outputs.items()
            if stage_id in wanted and output.status == STAGE_COMPLETE
        }

    def build_prompt(self, prior: Mapping[str, Any]) -> str:
        return build_synthesis_prompt(self.input, prior)

    def run(self, progress: StageProgress) -> Any:
        started = time.monotonic()
        progress(5, "Collecting prior analyses...")
        prior = self.prior_outputs()
        if not prior:
            return self.error_output("No completed analyses available to synthesise", started)
        missing = missing_dependencies(self.stage_id, self.outputs)
        if missing:
            print(f"[warn] {self.stage_id}: synthesising without {', '.join(missing)}", file=sys.stderr)
        progress(20, "Synthesising findings...")
        content = self.generate_with_metrics(self.build_prompt(prior))
        progress(85, "Checking reported metrics...")
        self.check_metrics(content)
        if missing:
            content["missingInputs"] = missing
        progress(100, "Synthesis complete")
        return content


class RapidSynthesisHandler(FinalSynthesisHandler):
    stage_id = "rapid-synthesis"

    def build_prompt(self, prior: Mapping[str, Any]) -> str:
        report = self.context.red_flags
        return build_rapid_synthesis_prompt(self.input, prior, report.summary if report is not None else "")

    def generate_with_metrics(self, prompt: str) -> dict[str, Any]:
        content = self.generate_json(prompt)
        return content if isinstance(content, dict) else {"result": content}


HANDLERS: dict[str, type[StageHandler]] = {
    handler.stage_id: handler
    for handler in (
        TechnologyDeepDiveHandler,
        ClaimsValidationHandler,
        PerformanceSimulationHandler,
        SystemIntegrationHandler,
        TeaAnalysisHandler,
        ImprovementOpportunitiesHandler,
        FinalSynthesisHandler,
        RapidSynthesisHandler,
    )
}


def build_descriptors(mode: str = "full") -> list[StageDescriptor]:
    return [
        StageDescriptor(id=stage_id, name=stage_name(stage_id, mode), factory=HANDLERS[stage_id])
        for stage_id in stage_order_for(mode)
    ]
