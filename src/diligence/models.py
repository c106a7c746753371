from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping, Optional

STATUS_COMPLETE = "complete"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STAGE_COMPLETE = "complete"
STAGE_ERROR = "error"


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


@dataclass
class Claim:
    id: str
    text: str
    source: str = ""
    confidence: str = "medium"
    validation_method: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], index: int = 0) -> "Claim":
        return cls(
            id=str(_pick(payload, "id", default=f"claim-{index + 1}")),
            text=str(_pick(payload, "text", "claim", default="")),
            source=str(_pick(payload, "source", default="") or ""),
            confidence=str(_pick(payload, "confidence", default="medium")),
            validation_method=_pick(payload, "validation_method", "validationMethod"),
        )


@dataclass
class PipelineInput:
    assessment_id: str
    title: str
    description: str
    technology_type: str
    domain_id: str
    claims: list[Claim] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    documents: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PipelineInput":
        raw_claims = _pick(payload, "claims", default=[]) or []
        claims = [
            item if isinstance(item, Claim) else Claim.from_dict(item, idx)
            for idx, item in enumerate(raw_claims)
        ]
        documents = []
        for item in _pick(payload, "documents", default=[]) or []:
            if isinstance(item, Mapping):
                documents.append(str(_pick(item, "excerpt", "content", "text", default="")))
            else:
                documents.append(str(item))
        return cls(
            assessment_id=str(_pick(payload, "assessment_id", "assessmentId", "id", default="assessment")),
            title=str(_pick(payload, "title", default="")),
            description=str(_pick(payload, "description", default="")),
            technology_type=str(_pick(payload, "technology_type", "technologyType", default="")),
            domain_id=str(_pick(payload, "domain_id", "domainId", "domain", default="general")),
            claims=claims,
            parameters=dict(_pick(payload, "parameters", default={}) or {}),
            documents=documents,
        )


@dataclass
class ReportSection:
    id: str
    title: str
    content: str
    level: int = 2


@dataclass
class StageOutput:
    stage_id: str
    stage_name: str
    status: str
    content: Any = None
    sections: list[ReportSection] = field(default_factory=list)
    error: Optional[str] = None
    duration: float = 0.0
    tokens_used: int = 0

    def __post_init__(self) -> None:
        if self.status not in {STAGE_COMPLETE, STAGE_ERROR}:
            raise ValueError(f"unknown stage status: {self.status!r}")
        if self.status == STAGE_COMPLETE and self.content is None:
            raise ValueError(f"stage {self.stage_id} completed without content")


@dataclass(frozen=True)
class StageError:
    stage_id: str
    error: str


@dataclass(frozen=True)
class StageDescriptor:
    id: str
    name: str
    factory: Callable[..., Any]


@dataclass
class ExtractionResult:
    value: Any
    found_at: Optional[list[str]]
    raw_value: Any
    transformed_value: Any
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class BenchmarkRange:
    min: float
    max: float
    median: float
    unit: str
    source: str
    year: int


@dataclass(frozen=True)
class DomainBenchmarks:
    capex: BenchmarkRange
    capex_unit: str
    opex_fixed: BenchmarkRange
    primary_cost: BenchmarkRange
    efficiency: BenchmarkRange
    lifetime: BenchmarkRange
    opex_variable: Optional[BenchmarkRange] = None
    secondary: Mapping[str, BenchmarkRange] = field(default_factory=dict)


@dataclass(frozen=True)
class TrlBenchmark:
    min: int
    max: int
    typical: int
    description: str


@dataclass(frozen=True)
class SanityRange:
    min: float
    max: float
    unit: str
    fail_action: str
    description: str = ""


@dataclass
class SanityCheckResult:
    metric_id: str
    value: float
    action: str
    message: str
    expected_range: Optional[SanityRange] = None
    suggested_value: Optional[float] = None

    @property
    def valid(self) -> bool:
        return self.action == "pass"


@dataclass(frozen=True)
class InvalidValue:
    field: str
    reason: str


@dataclass
class BundleValidation:
    is_valid: bool
    score: int
    missing_required: list[str] = field(default_factory=list)
    invalid_values: list[InvalidValue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class RedFlag:
    id: str
    category: str
    severity: str
    description: str
    explanation: str
    recommendation: str
    claim_id: Optional[str] = None
    value: Optional[float] = None
    limit: Optional[float] = None


@dataclass
class RedFlagReport:
    has_red_flags: bool
    flags: list[RedFlag] = field(default_factory=list)
    summary: str = ""
    execution_ms: float = 0.0


@dataclass
class TechnicalRisk:
    id: str
    risk: str
    severity: str
    category: str
    explanation: str = ""
    mitigation: Optional[str] = None


@dataclass
class KeyMetric:
    name: str
    value: str
    status: str
    benchmark: Optional[str] = None


@dataclass
class ResultSummary:
    key_strengths: list[str] = field(default_factory=list)
    key_risks: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)


@dataclass
class RunMetadata:
    started_at: str
    finished_at: str
    components_run: int
    components_successful: int
    components_failed: int
    mode: str = "full"
    cancelled: bool = False


@dataclass
class PipelineResult:
    assessment_id: str
    status: str
    sections: list[ReportSection] = field(default_factory=list)
    outputs: list[StageOutput] = field(default_factory=list)
    rating: Optional[str] = None
    rating_score: Optional[float] = None
    summary: Optional[ResultSummary] = None
    errors: list[StageError] = field(default_factory=list)
    duration: float = 0.0
    metadata: Optional[RunMetadata] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RapidPipelineResult(PipelineResult):
    traffic_light: str = "YELLOW"
    rating_justification: str = ""
    trl: int = 3
    trl_justification: str = ""
    trl_confidence: str = "low"
    top_risks: list[TechnicalRisk] = field(default_factory=list)
    red_flags: Optional[RedFlagReport] = None
    recommendation: str = "PROCEED_WITH_CAUTION"
    recommendation_rationale: str = ""
    executive_summary: str = ""
    key_metrics: list[KeyMetric] = field(default_factory=list)
