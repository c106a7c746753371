import json

import pytest

from diligence.debug_log import RunLogger, write_run_record
from diligence.extraction import extract
from diligence.sanity import validate_value


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_stage_lifecycle_is_traced() -> None:
    clock = FakeClock()
    logger = RunLogger("run-7", clock=clock)
    logger.stage_start("tea-analysis", "Techno-Economic Analysis")
    logger.log_ai_call("tea-analysis", model="m", latency_ms=12.0, success=True, prompt_tokens=100, completion_tokens=50)
    logger.stage_retry("tea-analysis", 1, "timeout")
    clock.now = 103.5
    logger.stage_complete("tea-analysis", "complete")

    trace = logger.stages["tea-analysis"]
    assert trace.duration == 3.5
    assert trace.retries == 1
    assert trace.tokens_used == 150
    assert logger.stage_tokens("tea-analysis") == 150
    assert [event["type"] for event in logger.events] == ["start", "ai_call", "retry", "complete"]
    assert [event["index"] for event in logger.events] == [0, 1, 2, 3]
    assert logger.summary_lines() == ["1. tea-analysis: complete (3.5s, tokens=150, retries=1)"]


def test_unknown_debug_event_type_raises() -> None:
    with pytest.raises(ValueError):
        RunLogger("r").log("telemetry", "", "nope")


def test_performance_metrics_and_record(tmp_path) -> None:
    logger = RunLogger("run-8")
    extract("tea-analysis", "capex", {"content": {"standardizedMetrics": {"capex": {"value": 900}}}}, logger=logger)
    extract("tea-analysis", "npv", {"content": {}}, logger=logger, deep_search=False)
    validate_value("lcoh", 80, "hydrogen", logger=logger)
    logger.stage_start("final-synthesis", "Final Synthesis")
    logger.stage_complete("final-synthesis", "error", "bad output")

    metrics = logger.performance_metrics()
    assert metrics["extraction_stats"]["total_attempts"] == 2
    assert metrics["extraction_stats"]["success_rate"] == 50.0
    assert metrics["extraction_stats"]["by_metric"]["capex"] == {"attempts": 1, "successes": 1}
    assert metrics["sanity_check_stats"] == {"passed": 0, "warned": 1, "rejected": 0}

    record = logger.to_record()
    assert record["summary"]["overall_status"] == "failure"
    assert record["summary"]["failed_stages"] == 1
    path = write_run_record(record, tmp_path / "nested" / "record.json")
    assert json.loads(path.read_text(encoding="utf-8"))["run_id"] == "run-8"


def test_log_file_and_echo(tmp_path, capsys) -> None:
    log_path = tmp_path / "logs" / "run.log"
    logger = RunLogger("run-9", echo=True, log_path=log_path)
    logger.error("claims-validation", "generator offline")
    assert "[ERROR][claims-validation] generator offline" in capsys.readouterr().out
    assert "[ERROR][claims-validation] generator offline" in log_path.read_text(encoding="utf-8")


def test_aborted_run_is_a_failure_even_after_a_success() -> None:
    logger = RunLogger("run-10")
    logger.state_transition("running", 0)
    logger.stage_start("technology-deep-dive", "Technology Deep Dive")
    logger.stage_complete("technology-deep-dive", "complete")
    logger.stage_start("claims-validation", "Claims Validation")
    logger.stage_complete("claims-validation", "error", "timeout")
    assert logger.to_record()["summary"]["overall_status"] == "partial"
    logger.state_transition("aborted")
    assert logger.run_state == "aborted"
    assert logger.to_record()["summary"]["overall_status"] == "failure"
