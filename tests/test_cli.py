import json
from types import SimpleNamespace

import pytest

from diligence import cli
from diligence import orchestrator as orchestrator_mod
from diligence.models import ReportSection, StageDescriptor, StageOutput

INPUT = {
    "assessmentId": "cli-1",
    "title": "PEM stack",
    "description": "20 MW PEM electrolyzer",
    "technologyType": "PEM electrolyzer",
    "domainId": "hydrogen",
    "claims": [
        {"id": "c1", "text": "72% efficiency", "source": "datasheet"},
        {"id": "c2", "text": "80,000 h lifetime", "source": "datasheet"},
        {"id": "c3", "text": "stack cost $400/kW", "source": "quote"},
        {"id": "c4", "text": "hydrogen purity 99.99%"},
    ],
}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in ("DILIGENCE_MODEL", "DILIGENCE_MAX_RETRIES", "DILIGENCE_CORRECTION_MODE", "DILIGENCE_SKIP_STAGES"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def input_path(tmp_path):
    path = tmp_path / "assessment.json"
    path.write_text(json.dumps(INPUT), encoding="utf-8")
    return path


def _fake_orchestrator(fail: bool = False):
    def factory(input_data, outputs, context):
        def execute(progress=None):
            if fail:
                raise RuntimeError("generator offline")
            return StageOutput(
                stage_id="final-synthesis",
                stage_name="Final Synthesis",
                status="complete",
                content={"assessmentRating": {"overall": "conditional", "score": 58}},
                sections=[ReportSection(id="final-synthesis", title="Final Synthesis", content="ok")],
            )

        return SimpleNamespace(execute=execute)

    class FakeOrchestrator(orchestrator_mod.AssessmentOrchestrator):
        def __init__(self, config, logger=None):
            super().__init__(
                config,
                client=SimpleNamespace(),
                logger=logger,
                descriptors=[StageDescriptor(id="final-synthesis", name="Final Synthesis", factory=factory)],
            )

    return FakeOrchestrator


def test_estimate_prints_duration(input_path, capsys) -> None:
    assert cli.main(["--input", str(input_path), "--estimate"]) == 0
    assert capsys.readouterr().out.strip() == "full assessment: 7 stages, ~16-39 min"
    assert cli.main(["--input", str(input_path), "--estimate", "--mode", "rapid"]) == 0
    assert capsys.readouterr().out.strip() == "rapid assessment: 3 stages, ~4-10 min"


def test_full_run_writes_result_and_debug_record(input_path, tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(orchestrator_mod, "AssessmentOrchestrator", _fake_orchestrator())
    out_path = tmp_path / "out" / "result.json"
    debug_path = tmp_path / "debug.json"
    code = cli.main(["--input", str(input_path), "--output", str(out_path), "--debug-output", str(debug_path)])
    assert code == 0
    result = json.loads(out_path.read_text(encoding="utf-8"))
    assert result["assessment_id"] == "cli-1"
    assert result["status"] == "complete"
    assert result["rating"] == "conditional"
    record = json.loads(debug_path.read_text(encoding="utf-8"))
    assert record["run_id"] == "cli-1"
    assert record["summary"]["overall_status"] == "success"
    captured = capsys.readouterr()
    assert "status=complete" in captured.out
    assert "[progress]   0.0% Starting assessment..." in captured.err
    assert "[summary] 1. final-synthesis: complete" in captured.err


def test_failed_run_exits_nonzero(input_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(orchestrator_mod, "AssessmentOrchestrator", _fake_orchestrator(fail=True))
    assert cli.main(["--input", str(input_path), "--max-retries", "0"]) == 1
    printed = json.loads(capsys.readouterr().out)
    assert printed["status"] == "failed"
    assert printed["errors"] == [{"stage_id": "final-synthesis", "error": "generator offline"}]


def test_stream_prints_events(input_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(orchestrator_mod, "AssessmentOrchestrator", _fake_orchestrator())
    assert cli.main(["--input", str(input_path), "--stream"]) == 0
    out = capsys.readouterr().out
    assert "[start]   0.0% Starting assessment..." in out
    assert "[stage_start]   0.0% [final-synthesis] Starting Final Synthesis..." in out
    assert "[complete] 100.0% Assessment complete" in out


def test_resolve_config_maps_flags() -> None:
    args = cli.build_parser().parse_args(
        ["--input", "x.json", "--skip-stages", "tea-analysis", "--no-continue-on-error", "--correction-mode", "strict"]
    )
    config = cli.resolve_config(args)
    assert config.skip_stage_ids == ("tea-analysis",)
    assert config.continue_on_error is False
    assert config.strict_corrections is True


def test_bad_input_exits(tmp_path) -> None:
    with pytest.raises(SystemExit):
        cli.main(["--input", str(tmp_path / "missing.json")])
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(SystemExit):
        cli.main(["--input", str(broken)])
    with pytest.raises(SystemExit):
        cli.main(["--input", str(broken), "--max-retries", "-1"])


def test_format_event_skips_stage_prefix_for_progress() -> None:
    event = orchestrator_mod.PipelineEvent("stage_progress", progress=12.5, message="[TEA] Loading", stage_id="tea-analysis")
    assert cli.format_event(event) == "[stage_progress]  12.5% [TEA] Loading"
