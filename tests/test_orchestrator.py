from types import SimpleNamespace

from diligence.config import PipelineConfig
from diligence.events import CancellationToken, EventStream
from diligence.models import ReportSection, StageDescriptor, StageError, StageOutput
from diligence.orchestrator import AssessmentOrchestrator, RunState


def _complete(stage_id: str) -> StageOutput:
    return StageOutput(
        stage_id=stage_id,
        stage_name=f"Stage {stage_id}",
        status="complete",
        content={"stage": stage_id},
        sections=[ReportSection(id=stage_id, title=f"Stage {stage_id}", content=f"body {stage_id}")],
    )


class FakeStages:
    """Descriptor factory double recording how often each stage is built."""

    def __init__(self, ids, *, failing=(), error_outputs=(), on_run=None):
        self.ids = list(ids)
        self.failing = set(failing)
        self.error_outputs = set(error_outputs)
        self.on_run = on_run
        self.calls: dict[str, int] = {stage_id: 0 for stage_id in self.ids}
        self.seen_outputs: dict[str, list[str]] = {}

    def descriptors(self) -> list[StageDescriptor]:
        return [StageDescriptor(id=stage_id, name=f"Stage {stage_id}", factory=self._factory(stage_id)) for stage_id in self.ids]

    def _factory(self, stage_id: str):
        def build(input_data, outputs, context):
            self.calls[stage_id] += 1
            self.seen_outputs[stage_id] = list(outputs)

            def execute(progress=None):
                if progress is not None:
                    progress(50, "halfway")
                if self.on_run is not None:
                    self.on_run(stage_id)
                if stage_id in self.failing:
                    raise RuntimeError(f"stage {stage_id} exploded")
                if stage_id in self.error_outputs:
                    return StageOutput(stage_id=stage_id, stage_name=f"Stage {stage_id}", status="error", error="bad input")
                return _complete(stage_id)

            return SimpleNamespace(execute=execute)

        return build


def _orchestrator(stages: FakeStages, **config) -> AssessmentOrchestrator:
    return AssessmentOrchestrator(PipelineConfig(**config), client=SimpleNamespace(), descriptors=stages.descriptors())


def test_failing_middle_stage_yields_partial_result(sample_input) -> None:
    stages = FakeStages(["1", "2", "3"], failing={"2"})
    orchestrator = _orchestrator(stages, max_retries=1)
    result = orchestrator.run(sample_input)
    assert result.status == "partial"
    assert result.errors == [StageError(stage_id="2", error="stage 2 exploded")]
    assert result.metadata.components_successful == 2
    assert result.metadata.components_failed == 1
    assert result.metadata.components_run == 3
    assert stages.calls == {"1": 1, "2": 2, "3": 1}
    assert [output.stage_id for output in result.outputs] == ["1", "3"]
    assert orchestrator.state is RunState.COMPLETED


def test_all_stages_complete_in_declared_order(sample_input) -> None:
    stages = FakeStages(["1", "2", "3"])
    result = _orchestrator(stages).run(sample_input)
    assert result.status == "complete"
    assert result.errors == []
    assert [section.id for section in result.sections] == ["1", "2", "3"]
    assert stages.seen_outputs == {"1": [], "2": ["1"], "3": ["1", "2"]}
    assert result.rating is None


def test_stop_on_first_error(sample_input) -> None:
    stages = FakeStages(["1", "2", "3"], failing={"2"})
    orchestrator = _orchestrator(stages, continue_on_error=False, max_retries=0)
    result = orchestrator.run(sample_input)
    assert result.status == "failed"
    assert stages.calls["3"] == 0
    assert orchestrator.state is RunState.ABORTED
    assert orchestrator.stage_status["3"]["status"] == "pending"
    assert orchestrator.run_logger.to_record()["summary"]["overall_status"] == "failure"


def test_skipped_stages_are_never_invoked(sample_input) -> None:
    stages = FakeStages(["1", "2", "3"])
    orchestrator = _orchestrator(stages, skip_stage_ids=("2",))
    messages: list[tuple[float, str]] = []
    result = orchestrator.run(sample_input, lambda p, m: messages.append((p, m)))
    assert stages.calls["2"] == 0
    assert result.status == "complete"
    assert orchestrator.stage_status["2"]["status"] == "skipped"
    starts = [p for p, m in messages if m.startswith("Starting Stage")]
    assert starts == [0, 50]


def test_returned_error_output_is_not_retried(sample_input) -> None:
    stages = FakeStages(["1", "2"], error_outputs={"2"})
    result = _orchestrator(stages, max_retries=3).run(sample_input)
    assert stages.calls["2"] == 1
    assert result.errors == [StageError(stage_id="2", error="bad input")]
    assert result.status == "partial"


def test_no_successful_stage_means_failed(sample_input) -> None:
    stages = FakeStages(["1"], failing={"1"})
    result = _orchestrator(stages, max_retries=0).run(sample_input)
    assert result.status == "failed"
    assert result.outputs == []


def test_progress_messages_are_monotonic_and_end_at_100(sample_input) -> None:
    stages = FakeStages(["1", "2"], failing={"2"})
    messages: list[tuple[float, str]] = []
    _orchestrator(stages, max_retries=1).run(sample_input, lambda p, m: messages.append((p, m)))
    assert messages[0] == (0, "Starting assessment...")
    assert (50, "Starting Stage 2...") in messages
    assert (25, "[Stage 1] halfway") in messages
    assert (50, "[Stage 2] Retrying... (attempt 2)") in messages
    assert messages[-1] == (100, "Assessment complete")
    progress_values = [p for p, _ in messages if p is not None]
    assert all(0 <= value <= 100 for value in progress_values)


def test_streaming_event_order(sample_input) -> None:
    stages = FakeStages(["1", "2"])
    stream = EventStream()
    result = _orchestrator(stages).run_streaming(sample_input, stream)
    assert result.status == "complete"
    assert stream.done is True
    assert stream.types() == [
        "start",
        "stage_start",
        "stage_progress",
        "overall_progress",
        "stage_complete",
        "stage_start",
        "stage_progress",
        "overall_progress",
        "stage_complete",
        "complete",
    ]
    complete = stream.events[-1]
    assert complete.progress == 100
    assert complete.data["status"] == "complete"


def test_streaming_reports_stage_errors(sample_input) -> None:
    stages = FakeStages(["1", "2"], failing={"1"})
    stream = EventStream()
    _orchestrator(stages, max_retries=0).run_streaming(sample_input, stream)
    errors = [event for event in stream.events if event.type == "stage_error"]
    assert len(errors) == 1
    assert errors[0].stage_id == "1"
    assert errors[0].data["error"] == "stage 1 exploded"


def test_cancellation_between_stages(sample_input) -> None:
    token = CancellationToken()

    def cancel_after_first(stage_id: str) -> None:
        if stage_id == "1":
            token.cancel()

    stages = FakeStages(["1", "2", "3"], on_run=cancel_after_first)
    orchestrator = _orchestrator(stages)
    result = orchestrator.run(sample_input, cancel=token)
    assert stages.calls == {"1": 1, "2": 0, "3": 0}
    assert result.status == "failed"
    assert result.metadata.cancelled is True
    assert orchestrator.stage_status["2"]["status"] == "cancelled"


def test_stage_tokens_and_logger_trace(sample_input) -> None:
    stages = FakeStages(["1"])
    orchestrator = _orchestrator(stages)
    orchestrator.run(sample_input)
    record = orchestrator.run_logger.to_record()
    assert record["summary"]["successful_stages"] == 1
    states = [event["data"]["state"] for event in record["events"] if event["type"] == "state"]
    assert states == ["running", "completed"]


def test_echo_prints_workflow_lines(sample_input, capsys) -> None:
    stages = FakeStages(["1"])
    _orchestrator(stages, echo=True).run(sample_input)
    out = capsys.readouterr().out
    assert "[workflow] stage=1 status=running" in out
    assert "[workflow] 1. 1: complete" in out
