from __future__ import annotations

import json
import threading
from typing import Any, Callable, Union

import pytest

from diligence.models import Claim, PipelineInput

Reply = Union[str, Exception, Callable[[str], str], dict, list]


class ScriptedClient:
    """Generation client double that replays canned replies in call order."""

    def __init__(self, replies: list[Reply] | None = None, *, default: Reply | None = None, usage: int = 0) -> None:
        self.replies = list(replies or [])
        self.default = default
        self.prompts: list[str] = []
        self.options: list[Any] = []
        self.usage = usage
        self._lock = threading.Lock()

    @property
    def last_usage(self) -> dict[str, int]:
        return {"prompt_tokens": self.usage, "completion_tokens": self.usage}

    def generate(self, prompt: str, options: Any) -> str:
        with self._lock:
            self.prompts.append(prompt)
            self.options.append(options)
            reply = self.replies.pop(0) if self.replies else self.default
        if reply is None:
            raise AssertionError(f"unexpected generation call: {prompt[:80]}")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        if isinstance(reply, (dict, list)):
            return json.dumps(reply)
        return reply


def metrics_bundle(**overrides: Any) -> dict[str, Any]:
    bundle: dict[str, Any] = {
        "primaryCostMetric": {"id": "lcoh", "name": "LCOH", "value": 5.2, "unit": "$/kg", "source": "model"},
        "efficiency": {"id": "efficiency", "name": "Efficiency", "value": 70, "unit": "%", "source": "model"},
        "capex": {"id": "capex", "name": "CAPEX", "value": 900, "unit": "$/kW", "source": "model"},
        "opex": {"id": "opex", "name": "OPEX", "value": 25, "unit": "$/kW-yr", "source": "model"},
        "trl": 6,
        "rating": "PROMISING",
        "secondaryMetrics": [
            {"id": "specific_consumption", "name": "Specific consumption", "value": 4.8, "unit": "kWh/Nm3", "source": "model"},
        ],
        "generatedAt": "2026-01-01T00:00:00",
        "sourceComponent": "test",
    }
    bundle.update(overrides)
    return bundle


@pytest.fixture
def scripted_client() -> type[ScriptedClient]:
    return ScriptedClient


@pytest.fixture
def bundle_factory() -> Callable[..., dict[str, Any]]:
    return metrics_bundle


@pytest.fixture
def sample_input() -> PipelineInput:
    return PipelineInput(
        assessment_id="a-1",
        title="PEM electrolyzer stack",
        description="A 20 MW PEM electrolyzer system with a new catalyst coating.",
        technology_type="PEM electrolyzer",
        domain_id="hydrogen",
        claims=[
            Claim(id="c1", text="Stack efficiency of 72% efficiency at rated load", source="datasheet"),
            Claim(id="c2", text="Stack lifetime of 80,000 hours", source="test report"),
            Claim(id="c3", text="Specific consumption of 4.9 kWh/Nm3", source="datasheet"),
            Claim(id="c4", text="Hydrogen purity above 99.99%", source=""),
        ],
    )
