import threading

import pytest

from diligence.errors import PipelineCancelled
from diligence.events import CancellationToken, EventStream, PipelineEvent, progress_observer


def test_unknown_event_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        PipelineEvent("stage_done")


def test_event_stream_marks_done_on_terminal_event() -> None:
    stream = EventStream()
    stream.append(PipelineEvent("start", progress=0, message="go"))
    events, done = stream.wait_for_events(0, timeout=0.01)
    assert [e.type for e in events] == ["start"]
    assert done is False
    stream(PipelineEvent("complete", progress=100, message="done"))
    events, done = stream.wait_for_events(1, timeout=0.01)
    assert [e.type for e in events] == ["complete"]
    assert done is True


def test_event_stream_wakes_waiting_reader() -> None:
    stream = EventStream()
    received: list[str] = []

    def reader() -> None:
        index = 0
        done = False
        while not done:
            events, done = stream.wait_for_events(index, timeout=1.0)
            index += len(events)
            received.extend(e.type for e in events)

    thread = threading.Thread(target=reader)
    thread.start()
    stream.append(PipelineEvent("stage_start", progress=0, message="a"))
    stream.append(PipelineEvent("error", message="boom"))
    thread.join(timeout=5)
    assert received == ["stage_start", "error"]


def test_progress_observer_forwards_only_messages() -> None:
    seen: list[tuple[float, str]] = []
    observe = progress_observer(lambda p, m: seen.append((p, m)))
    observe(PipelineEvent("overall_progress", progress=40))
    observe(PipelineEvent("stage_progress", progress=41, message="[TEA] working"))
    observe(PipelineEvent("stage_error", progress=50, message="TEA failed"))
    observe(PipelineEvent("complete", progress=100, message="Assessment complete"))
    assert seen == [(41, "[TEA] working"), (100, "Assessment complete")]
    progress_observer(None)(PipelineEvent("complete", progress=100, message="x"))


def test_cancellation_token() -> None:
    token = CancellationToken()
    token.raise_if_cancelled("early")
    assert token.cancelled is False
    token.cancel()
    assert token.cancelled is True
    with pytest.raises(PipelineCancelled, match="cancelled between stages"):
        token.raise_if_cancelled("between stages")
