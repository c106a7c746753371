from __future__ import annotations

import argparse
import json
import shutil
import sys
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from .config import CORRECTION_MODE_ENV, MAX_RETRIES_ENV, MODEL_ENV, SKIP_STAGES_ENV, PipelineConfig, parse_stage_list
from .debug_log import RunLogger, write_run_record
from .events import EventStream, PipelineEvent
from .models import PipelineInput, PipelineResult
from .stages import estimate_duration


class CleanHelpFormatter(argparse.RawDescriptionHelpFormatter):
    def __init__(self, prog: str) -> None:
        width = shutil.get_terminal_size((120, 20)).columns
        super().__init__(prog, width=width, max_help_position=32)


def build_parser() -> argparse.ArgumentParser:
    epilog = (
        "Input:\n"
        "  A JSON file with assessment_id, title, description, technology_type, domain_id,\n"
        "  claims [{id, text, source, confidence}], parameters {...} and optional documents.\n"
        "  camelCase keys (assessmentId, technologyType, domainId) are accepted too.\n\n"
        "Environment:\n"
        f"  {MODEL_ENV}, {MAX_RETRIES_ENV}, {CORRECTION_MODE_ENV}, {SKIP_STAGES_ENV}\n"
        "  OPENAI_API_KEY and OPENAI_BASE_URL select the OpenAI-compatible endpoint.\n\n"
        "Examples:\n"
        "  diligence --input ./assessment.json --output ./result.json\n"
        "  diligence --input ./assessment.json --mode rapid --stream\n"
        "  diligence --input ./assessment.json --skip-stages system-integration,improvement-opportunities\n"
        "  diligence --input ./assessment.json --estimate\n"
    )
    ap = argparse.ArgumentParser(
        prog="diligence",
        description="Clean-energy technology due-diligence pipeline: staged generation, metric extraction and sanity checks.",
        formatter_class=CleanHelpFormatter,
        epilog=epilog,
    )
    ap.add_argument("--input", required=True, help="Path to the assessment input JSON.")
    ap.add_argument("--mode", choices=["full", "rapid"], default="full", help="Assessment variant (default: full).")
    ap.add_argument(
        "--skip-stages",
        help="Comma/semicolon separated stage ids to leave out (e.g. system-integration,improvement-opportunities).",
    )
    ap.add_argument(
        "--continue-on-error",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Keep running later stages after a stage fails (default: on).",
    )
    ap.add_argument("--max-retries", type=int, help="Extra attempts per failing stage (default: 1).")
    ap.add_argument(
        "--correction-mode",
        choices=["strict", "lenient"],
        help="strict scales out-of-benchmark cost breakdowns; lenient only warns (default: lenient).",
    )
    ap.add_argument("--model", help="OpenAI-compatible model name (default: DILIGENCE_MODEL or gpt-4o-mini).")
    ap.add_argument("--skip-red-flags", action="store_true", help="Skip the red-flag screen in rapid mode.")
    ap.add_argument("--output", help="Write the result JSON to this path (default: print to stdout).")
    ap.add_argument("--debug-output", help="Write the run debug record (events, AI calls, extractions) as JSON.")
    ap.add_argument("--log-file", help="Append timestamped debug log lines to this file.")
    ap.add_argument("--stream", action="store_true", help="Print pipeline events as they arrive.")
    ap.add_argument("--echo", action="store_true", help="Print debug events and [workflow] lines to stdout.")
    ap.add_argument("--estimate", action="store_true", help="Print the duration estimate and exit.")
    return ap


def load_input(path: Path) -> PipelineInput:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise SystemExit(f"Input not found: {path}")
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Input is not valid JSON: {path} ({exc})")
    if not isinstance(payload, dict):
        raise SystemExit("Input JSON must be an object.")
    return PipelineInput.from_dict(payload)


def resolve_config(args: argparse.Namespace) -> PipelineConfig:
    overrides: dict[str, Any] = {}
    if args.skip_stages is not None:
        overrides["skip_stage_ids"] = tuple(parse_stage_list(args.skip_stages))
    if args.continue_on_error is not None:
        overrides["continue_on_error"] = args.continue_on_error
    if args.max_retries is not None:
        if args.max_retries < 0:
            raise SystemExit("--max-retries must be >= 0.")
        overrides["max_retries"] = args.max_retries
    if args.correction_mode:
        overrides["correction_mode"] = args.correction_mode
    if args.model:
        overrides["model"] = args.model
    if args.skip_red_flags:
        overrides["skip_red_flags"] = True
    if args.echo:
        overrides["echo"] = True
    return PipelineConfig.from_env(**overrides)


def format_event(event: PipelineEvent) -> str:
    progress = f"{event.progress:5.1f}%" if event.progress is not None else "   -  "
    stage = f"[{event.stage_id}] " if event.stage_id and event.type != "stage_progress" else ""
    return f"[{event.type}] {progress} {stage}{event.message}".rstrip()


def _run_streaming(orchestrator: Any, input_data: PipelineInput) -> PipelineResult:
    stream = EventStream()
    holder: dict[str, Any] = {}

    def worker() -> None:
        try:
            holder["result"] = orchestrator.run_streaming(input_data, stream.append)
        except Exception as exc:
            holder["error"] = exc
        finally:
            stream.close()

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    index = 0
    done = False
    while not done:
        events, done = stream.wait_for_events(index, timeout=1.0)
        index += len(events)
        for event in events:
            if event.type == "overall_progress" and not event.message:
                continue
            print(format_event(event), flush=True)
    thread.join()
    if "error" in holder:
        raise holder["error"]
    return holder["result"]


def main(argv: Optional[Iterable[str]] = None) -> int:
    from .orchestrator import AssessmentOrchestrator, RapidAssessmentOrchestrator

    args = build_parser().parse_args(list(argv) if argv is not None else None)
    input_data = load_input(Path(args.input))
    config = resolve_config(args)

    if args.estimate:
        estimate = estimate_duration(input_data, args.mode, config.skip_stage_ids)
        print(f"{args.mode} assessment: {estimate.stages} stages, ~{estimate.min_minutes}-{estimate.max_minutes} min")
        return 0

    logger = RunLogger(
        input_data.assessment_id,
        echo=config.echo,
        log_path=Path(args.log_file) if args.log_file else None,
    )
    orchestrator_cls = RapidAssessmentOrchestrator if args.mode == "rapid" else AssessmentOrchestrator
    orchestrator = orchestrator_cls(config, logger=logger)

    if args.stream:
        result = _run_streaming(orchestrator, input_data)
    else:
        def progress(value: float, message: str) -> None:
            print(f"[progress] {value:5.1f}% {message}", file=sys.stderr, flush=True)

        result = orchestrator.run(input_data, progress)

    text = json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str)
    if args.output:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
        print(f"Wrote {out_path} (status={result.status})")
    else:
        print(text)
    if args.debug_output:
        write_run_record(logger.to_record(), Path(args.debug_output))
    for line in logger.summary_lines():
        print(f"[summary] {line}", file=sys.stderr)
    return 0 if result.status != "failed" else 1
