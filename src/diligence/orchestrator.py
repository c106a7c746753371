"""Run the assessment stages in order and fold their outputs into a result.

``AssessmentOrchestrator.run`` reports ``(progress, message)`` pairs;
``run_streaming`` emits ``PipelineEvent`` objects. Both drive the same state
machine in ``_execute``. ``RapidAssessmentOrchestrator`` prefixes the stage
loop with the synchronous red-flag screen and builds a ``RapidPipelineResult``.
"""

from __future__ import annotations

import datetime as dt
import time
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Optional

from .aggregator import aggregate, aggregate_rapid
from .config import PipelineConfig
from .debug_log import RunLogger
from .errors import PipelineCancelled
from .events import (
    CancellationToken,
    EventCallback,
    PipelineEvent,
    ProgressCallback,
    progress_observer,
)
from .handlers import StageContext, build_descriptors
from .models import (
    STAGE_COMPLETE,
    PipelineInput,
    PipelineResult,
    RedFlagReport,
    StageDescriptor,
    StageError,
    StageOutput,
)
from .red_flags import detect_red_flags, skipped_report
from .sanity import validate_output
from .stages import (
    STAGE_PROGRESS_RANGE,
    ProgressBand,
    format_stage_summary,
    initialize_stage_status,
    progress_band,
    record_stage,
    resolve_stage_plan,
)

__all__ = [
    "AssessmentOrchestrator",
    "CancellationToken",
    "RapidAssessmentOrchestrator",
    "RunState",
    "run_assessment",
    "run_rapid_assessment",
]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ABORTED = "aborted"
    COMPLETED = "completed"


class AssessmentOrchestrator:
    mode = "full"

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        client: Any = None,
        logger: Optional[RunLogger] = None,
        *,
        descriptors: Optional[Iterable[StageDescriptor]] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        if client is None:
            from .generation import OpenAICompatClient

            client = OpenAICompatClient(self.config.model)
        self.client = client
        self.logger = logger
        self.descriptors = list(descriptors) if descriptors is not None else build_descriptors(self.mode)
        self.state = RunState.IDLE
        self.stage_status: dict[str, dict[str, str]] = {}
        self.run_logger: Optional[RunLogger] = logger

    def run(
        self,
        input_data: PipelineInput,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        return self._execute(input_data, progress_observer(progress), cancel)

    def run_streaming(
        self,
        input_data: PipelineInput,
        on_event: EventCallback,
        cancel: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        try:
            return self._execute(input_data, on_event, cancel)
        except Exception as exc:
            on_event(PipelineEvent("error", message=str(exc) or exc.__class__.__name__))
            raise

    def _transition(self, logger: RunLogger, state: RunState, stage_index: Optional[int] = None) -> None:
        self.state = state
        logger.state_transition(state.value, stage_index)

    def _record(self, name: str, status: str, detail: str = "") -> None:
        record_stage(self.stage_status, name=name, status=status, detail=detail)
        if not self.config.echo:
            return
        detail_text = str(detail or "").strip()
        if detail_text:
            print(f"[workflow] stage={name} status={status} detail={detail_text}")
        else:
            print(f"[workflow] stage={name} status={status}")

    def _before_stages(self, input_data: PipelineInput, emit: EventCallback, context: StageContext) -> None:
        return None

    def _aggregate(self, context: StageContext, **kwargs: Any) -> PipelineResult:
        return aggregate(mode=self.mode, **kwargs)

    def _run_stage(
        self,
        descriptor: StageDescriptor,
        input_data: PipelineInput,
        outputs_view: MappingProxyType,
        context: StageContext,
        band: ProgressBand,
        emit: EventCallback,
        logger: RunLogger,
    ) -> tuple[Optional[StageOutput], Optional[str]]:
        def report(sub_progress: float, message: str) -> None:
            overall = band.map(sub_progress)
            logger.stage_progress(descriptor.id, overall, message)
            emit(
                PipelineEvent(
                    "stage_progress",
                    progress=overall,
                    message=f"[{descriptor.name}] {message}",
                    stage_id=descriptor.id,
                    stage_name=descriptor.name,
                )
            )
            emit(PipelineEvent("overall_progress", progress=overall))

        last_error = ""
        for attempt in range(self.config.max_retries + 1):
            if attempt > 0:
                logger.stage_retry(descriptor.id, attempt, last_error)
                emit(
                    PipelineEvent(
                        "stage_progress",
                        progress=band.base,
                        message=f"[{descriptor.name}] Retrying... (attempt {attempt + 1})",
                        stage_id=descriptor.id,
                        stage_name=descriptor.name,
                        data={"attempt": attempt + 1, "error": last_error},
                    )
                )
            try:
                handler = descriptor.factory(input_data, outputs_view, context)
                return handler.execute(report), None
            except PipelineCancelled as exc:
                return None, str(exc) or "cancelled"
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.error(descriptor.id, f"attempt {attempt + 1} failed: {last_error}")
        return None, last_error

    def _execute(
        self,
        input_data: PipelineInput,
        emit: EventCallback,
        cancel: Optional[CancellationToken],
    ) -> PipelineResult:
        logger = self.logger or RunLogger(input_data.assessment_id, echo=self.config.echo)
        self.run_logger = logger
        started_at = dt.datetime.now().isoformat()
        started = time.monotonic()
        order = [descriptor.id for descriptor in self.descriptors]
        planned_ids, skipped = resolve_stage_plan(order, self.config.skip_stage_ids)
        planned = [descriptor for descriptor in self.descriptors if descriptor.id in planned_ids]
        self.stage_status = initialize_stage_status(stage_order=order, skipped=skipped)
        for stage_id in skipped:
            self._record(stage_id, "skipped")
        context = StageContext(
            config=self.config,
            client=self.client,
            logger=logger,
            cancel=cancel,
            mode=self.mode,
        )

        emit(PipelineEvent("start", progress=0, message="Starting assessment...", data={"stages": planned_ids}))
        self._before_stages(input_data, emit, context)

        outputs: dict[str, StageOutput] = {}
        outputs_view = MappingProxyType(outputs)
        errors: list[StageError] = []
        aborted = False
        cancelled = False
        start, end = STAGE_PROGRESS_RANGE.get(self.mode, (0.0, 100.0))

        for index, descriptor in enumerate(planned):
            if cancel is not None and cancel.cancelled:
                aborted = cancelled = True
                self._record(descriptor.id, "cancelled")
                break
            self._transition(logger, RunState.RUNNING, index)
            band = progress_band(index, len(planned), start=start, end=end)
            emit(
                PipelineEvent(
                    "stage_start",
                    progress=band.base,
                    message=f"Starting {descriptor.name}...",
                    stage_id=descriptor.id,
                    stage_name=descriptor.name,
                )
            )
            self._record(descriptor.id, "running")
            logger.stage_start(descriptor.id, descriptor.name)
            output, error = self._run_stage(descriptor, input_data, outputs_view, context, band, emit, logger)

            if output is not None and output.status == STAGE_COMPLETE:
                outputs[descriptor.id] = output
                validate_output(descriptor.id, output, input_data.domain_id, logger=logger)
                logger.stage_complete(descriptor.id, "complete")
                self._record(descriptor.id, "complete", f"{output.duration:.1f}s")
                emit(
                    PipelineEvent(
                        "stage_complete",
                        progress=band.end,
                        message=f"{descriptor.name} complete",
                        stage_id=descriptor.id,
                        stage_name=descriptor.name,
                        data={"duration": output.duration, "tokens_used": output.tokens_used},
                    )
                )
                continue

            message = (output.error if output is not None else error) or "stage failed"
            errors.append(StageError(stage_id=descriptor.id, error=message))
            logger.stage_complete(descriptor.id, "error", message)
            self._record(descriptor.id, "error", message)
            emit(
                PipelineEvent(
                    "stage_error",
                    progress=band.end,
                    message=f"{descriptor.name} failed: {message}",
                    stage_id=descriptor.id,
                    stage_name=descriptor.name,
                    data={"error": message},
                )
            )
            if not self.config.continue_on_error:
                aborted = True
                break

        if cancel is not None and cancel.cancelled and not cancelled:
            aborted = cancelled = True
        self._transition(logger, RunState.ABORTED if aborted else RunState.COMPLETED)
        result = self._aggregate(
            context,
            input=input_data,
            plan=planned_ids,
            outputs=outputs,
            errors=errors,
            started_at=started_at,
            duration=time.monotonic() - started,
            aborted=aborted,
            cancelled=cancelled,
            logger=logger,
        )
        if self.config.echo:
            for line in format_stage_summary(self.stage_status):
                print(f"[workflow] {line}")
        emit(
            PipelineEvent(
                "complete",
                progress=100,
                message="Assessment complete" if not aborted else f"Assessment stopped ({result.status})",
                data={"status": result.status, "errors": len(errors), "cancelled": cancelled},
            )
        )
        return result


class RapidAssessmentOrchestrator(AssessmentOrchestrator):
    mode = "rapid"

    def _before_stages(self, input_data: PipelineInput, emit: EventCallback, context: StageContext) -> None:
        emit(PipelineEvent("overall_progress", progress=5, message="Checking for physics violations..."))
        report: RedFlagReport = skipped_report() if self.config.skip_red_flags else detect_red_flags(input_data)
        context.red_flags = report
        critical = [flag for flag in report.flags if flag.severity == "critical"]
        emit(
            PipelineEvent(
                "red_flags_detected",
                progress=10 if critical else 5,
                message=report.summary,
                data={
                    "has_red_flags": report.has_red_flags,
                    "flags": len(report.flags),
                    "critical": len(critical),
                },
            )
        )
        if critical:
            emit(
                PipelineEvent(
                    "overall_progress",
                    progress=10,
                    message="Critical red flags detected - proceeding with caution...",
                )
            )

    def _aggregate(self, context: StageContext, **kwargs: Any) -> PipelineResult:
        return aggregate_rapid(red_flags=context.red_flags or skipped_report(), **kwargs)


def run_assessment(
    input_data: PipelineInput,
    config: Optional[PipelineConfig] = None,
    client: Any = None,
    progress: Optional[ProgressCallback] = None,
) -> PipelineResult:
    return AssessmentOrchestrator(config, client).run(input_data, progress)


def run_rapid_assessment(
    input_data: PipelineInput,
    config: Optional[PipelineConfig] = None,
    client: Any = None,
    progress: Optional[ProgressCallback] = None,
) -> PipelineResult:
    return RapidAssessmentOrchestrator(config, client).run(input_data, progress)
