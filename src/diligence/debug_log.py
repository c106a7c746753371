from __future__ import annotations

import datetime as dt
import json
import threading
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

COST_PER_MILLION_TOKENS = 0.075

EVENT_TYPES = (
    "start",
    "progress",
    "complete",
    "error",
    "retry",
    "state",
    "extraction",
    "validation",
    "sanity_check",
    "benchmark_check",
    "correction",
    "ai_call",
)


@dataclass
class StageTrace:
    stage_id: str
    stage_name: str
    started: float
    finished: float = 0.0
    duration: float = 0.0
    status: str = "running"
    retries: int = 0
    tokens_used: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    ai_calls: int = 0
    error: Optional[str] = None


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "value") and type(value).__module__ != "builtins" and isinstance(getattr(value, "value"), str):
        return value.value
    return value


class RunLogger:
    """Structured event log for one pipeline run.

    One instance per run, handed to the orchestrator and everything below it.
    Keeps everything in memory; ``to_record()`` returns a JSON-ready dict.
    """

    def __init__(
        self,
        run_id: str,
        *,
        echo: bool = False,
        log_path: Optional[Path] = None,
        clock=time.monotonic,
    ) -> None:
        self.run_id = run_id
        self.echo = echo
        self.log_path = log_path
        self._clock = clock
        self._lock = threading.Lock()
        self._started = clock()
        self._created_at = dt.datetime.now().isoformat()
        self.events: list[dict[str, Any]] = []
        self.stages: dict[str, StageTrace] = {}
        self.ai_calls: list[dict[str, Any]] = []
        self.extractions: list[dict[str, Any]] = []
        self.sanity_checks: list[dict[str, Any]] = []
        self.validations: list[dict[str, Any]] = []
        self.run_state: Optional[str] = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)

    def _write_line(self, msg: str) -> None:
        if self.echo:
            print(msg, flush=True)
        if self.log_path is not None:
            ts = time.strftime("%Y-%m-%d %H:%M:%S")
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(f"[{ts}] {msg}\n")

    def log(self, event_type: str, stage_id: str, message: str, **data: Any) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown debug event type: {event_type}")
        event = {
            "index": 0,
            "timestamp": dt.datetime.now().isoformat(),
            "run_id": self.run_id,
            "stage": stage_id,
            "type": event_type,
            "message": message,
            "data": _jsonable(data),
        }
        with self._lock:
            event["index"] = len(self.events)
            self.events.append(event)
        self._write_line(f"[{event_type.upper()}][{stage_id or '-'}] {message}")

    def stage_start(self, stage_id: str, stage_name: str) -> None:
        with self._lock:
            self.stages[stage_id] = StageTrace(stage_id=stage_id, stage_name=stage_name, started=self._clock())
        self.log("start", stage_id, f"Starting {stage_name}")

    def stage_progress(self, stage_id: str, progress: float, message: str) -> None:
        self.log("progress", stage_id, f"{progress:.0f}% - {message}", progress=progress)

    def stage_retry(self, stage_id: str, attempt: int, error: str) -> None:
        with self._lock:
            trace = self.stages.get(stage_id)
            if trace is not None:
                trace.retries += 1
        self.log("retry", stage_id, f"Retrying after error (attempt {attempt})", attempt=attempt, error=error)

    def stage_complete(self, stage_id: str, status: str, error: Optional[str] = None) -> None:
        with self._lock:
            trace = self.stages.get(stage_id)
            if trace is not None:
                trace.finished = self._clock()
                trace.duration = max(0.0, trace.finished - trace.started)
                trace.status = status
                trace.error = error
        duration = trace.duration if trace is not None else 0.0
        tokens = trace.tokens_used if trace is not None else 0
        self.log(
            "complete",
            stage_id,
            f"Completed with status: {status}",
            duration=duration,
            tokens_used=tokens,
            error=error,
        )

    def state_transition(self, state: str, stage_index: Optional[int] = None) -> None:
        self.run_state = state
        detail = state if stage_index is None else f"{state}({stage_index})"
        self.log("state", "", f"-> {detail}", state=state, stage_index=stage_index)

    def error(self, stage_id: str, message: str) -> None:
        self.log("error", stage_id, message)

    def log_ai_call(
        self,
        stage_id: str,
        *,
        model: str,
        latency_ms: float,
        success: bool,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        error: Optional[str] = None,
    ) -> None:
        total = int(prompt_tokens or 0) + int(completion_tokens or 0)
        call = {
            "stage": stage_id,
            "model": model,
            "prompt_tokens": int(prompt_tokens or 0),
            "completion_tokens": int(completion_tokens or 0),
            "total_tokens": total,
            "latency_ms": round(latency_ms, 1),
            "success": success,
            "error": error,
        }
        with self._lock:
            self.ai_calls.append(call)
            trace = self.stages.get(stage_id)
            if trace is not None:
                trace.ai_calls += 1
                trace.tokens_used += total
                trace.prompt_tokens += call["prompt_tokens"]
                trace.completion_tokens += call["completion_tokens"]
        status = "completed" if success else "failed"
        self.log("ai_call", stage_id, f"AI call {status} in {latency_ms:.0f}ms", **call)

    def stage_tokens(self, stage_id: str) -> int:
        with self._lock:
            trace = self.stages.get(stage_id)
            return trace.tokens_used if trace is not None else 0

    def log_extraction(self, stage_id: str, metric_id: str, paths: Iterable[Iterable[Any]], result: Any) -> None:
        attempt = {
            "stage": stage_id,
            "metric": metric_id,
            "paths": [[str(seg) for seg in path] for path in paths],
            "found_at": result.found_at,
            "raw_value": _jsonable(result.raw_value),
            "transformed_value": result.transformed_value,
            "success": bool(result.success),
            "error": result.error,
        }
        with self._lock:
            self.extractions.append(attempt)
        outcome = "SUCCESS" if result.success else "FAILED"
        self.log("extraction", stage_id, f"Extraction {outcome}: {metric_id}", **attempt)

    def log_sanity(self, result: Any, stage_id: str = "") -> None:
        entry = {
            "stage": stage_id,
            "metric": result.metric_id,
            "value": result.value,
            "action": result.action,
            "message": result.message,
            "suggested_value": result.suggested_value,
        }
        with self._lock:
            self.sanity_checks.append(entry)
        self.log("sanity_check", stage_id, f"Sanity check {result.action}: {result.metric_id} = {result.value}", **entry)

    def log_validation(self, stage_id: str, kind: str, is_valid: bool, score: float, **detail: Any) -> None:
        entry = {"stage": stage_id, "kind": kind, "is_valid": is_valid, "score": score, **_jsonable(detail)}
        with self._lock:
            self.validations.append(entry)
        outcome = "PASSED" if is_valid else "FAILED"
        self.log("validation", stage_id, f"Validation {outcome} ({kind}, score: {score})", **entry)

    def log_benchmark_check(self, stage_id: str, metric: str, value: float, benchmark: Any, valid: bool) -> None:
        outcome = "PASSED" if valid else "FAILED"
        self.log(
            "benchmark_check",
            stage_id,
            f"Benchmark check {outcome}: {metric} = {value}",
            metric=metric,
            value=value,
            benchmark=benchmark,
            valid=valid,
        )

    def sanity_tally(self) -> dict[str, int]:
        tally = {"passed": 0, "warned": 0, "rejected": 0}
        with self._lock:
            for check in self.sanity_checks:
                action = check.get("action")
                if action == "pass":
                    tally["passed"] += 1
                elif action == "warn":
                    tally["warned"] += 1
                elif action == "reject":
                    tally["rejected"] += 1
        return tally

    def performance_metrics(self) -> dict[str, Any]:
        with self._lock:
            stages = list(self.stages.values())
            extractions = list(self.extractions)
        durations = {trace.stage_id: round(trace.duration, 3) for trace in stages}
        tokens = {trace.stage_id: trace.tokens_used for trace in stages}
        total_tokens = sum(tokens.values())
        by_metric: dict[str, dict[str, int]] = {}
        successes = 0
        for attempt in extractions:
            stats = by_metric.setdefault(attempt["metric"], {"attempts": 0, "successes": 0})
            stats["attempts"] += 1
            if attempt["success"]:
                stats["successes"] += 1
                successes += 1
        total_attempts = len(extractions)
        return {
            "total_duration": round(max(0.0, self._clock() - self._started), 3),
            "stage_durations": durations,
            "token_usage": {
                "total": total_tokens,
                "by_stage": tokens,
                "estimated_cost": (total_tokens / 1_000_000) * COST_PER_MILLION_TOKENS,
            },
            "extraction_stats": {
                "total_attempts": total_attempts,
                "successful": successes,
                "failed": total_attempts - successes,
                "success_rate": (successes / total_attempts * 100) if total_attempts else 0.0,
                "by_metric": by_metric,
            },
            "sanity_check_stats": self.sanity_tally(),
        }

    def summary_lines(self) -> list[str]:
        lines: list[str] = []
        with self._lock:
            stages = list(self.stages.values())
        for idx, trace in enumerate(stages, start=1):
            line = f"{idx}. {trace.stage_id}: {trace.status}"
            detail = []
            if trace.duration:
                detail.append(f"{trace.duration:.1f}s")
            if trace.tokens_used:
                detail.append(f"tokens={trace.tokens_used}")
            if trace.retries:
                detail.append(f"retries={trace.retries}")
            if trace.error:
                detail.append(trace.error)
            if detail:
                line = f"{line} ({', '.join(detail)})"
            lines.append(line)
        return lines

    def to_record(self) -> dict[str, Any]:
        with self._lock:
            stages = [asdict(trace) for trace in self.stages.values()]
            events = list(self.events)
            ai_calls = list(self.ai_calls)
            extractions = list(self.extractions)
            sanity_checks = list(self.sanity_checks)
            validations = list(self.validations)
        successful = sum(1 for s in stages if s["status"] == "complete")
        failed = sum(1 for s in stages if s["status"] == "error")
        if self.run_state == "aborted":
            overall = "failure"
        elif failed == 0:
            overall = "success"
        elif successful > 0:
            overall = "partial"
        else:
            overall = "failure"
        return {
            "run_id": self.run_id,
            "created_at": self._created_at,
            "generated_at": dt.datetime.now().isoformat(),
            "events": events,
            "stages": stages,
            "ai_calls": ai_calls,
            "extractions": extractions,
            "sanity_checks": sanity_checks,
            "validations": validations,
            "performance": self.performance_metrics(),
            "summary": {
                "total_events": len(events),
                "total_stages": len(stages),
                "successful_stages": successful,
                "failed_stages": failed,
                "total_extractions": len(extractions),
                "successful_extractions": sum(1 for e in extractions if e["success"]),
                "overall_status": overall,
            },
        }


def write_run_record(record: dict[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
    return path
