"""Core Pydantic schemas for the ASIP pipeline engine.

These schemas define the data contracts for:
- Projects, resources, runs, hypotheses and prompt versions (persisted rows)
- Per-hypothesis research items used by the fan-out strategy
- Validation results produced by the extraction engine
- Pipeline configuration loaded from the environment
"""

import os
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# =============================================================================
# Enums
# =============================================================================


class RunStatus(str, Enum):
    """Top-level lifecycle states for a run."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    INTERRUPTED = "interrupted"  # Found running/paused at startup
    CANCELLED = "cancelled"


class ResourceType(str, Enum):
    TARGET_SPEC = "target_spec"
    TECHNICAL_ASSETS = "technical_assets"


class ModelTier(str, Enum):
    """Model quality tiers for completion calls."""

    PRO = "pro"  # Synthesis and scoring
    FLASH = "flash"  # Extraction and formatting


class ValidationAction(str, Enum):
    CONTINUE = "continue"
    RETRY = "retry"
    ERROR = "error"


class ResearchStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ResearchStrategyName(str, Enum):
    """How the research step is carried out."""

    SHARED = "shared"  # One research call covering every hypothesis
    PER_HYPOTHESIS = "per_hypothesis"  # Bounded fan-out, one call per hypothesis


class ItemStatus(str, Enum):
    """Persisted status of a per-hypothesis research item."""

    PENDING = "pending"
    RESEARCHING = "researching"
    RESEARCHED = "researched"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    ERROR = "error"


class ItemPhase(str, Enum):
    """Micro-state of a research item, derived from its persisted fields."""

    PENDING = "pending"
    POLLING = "polling"  # Has an open research handle
    READY_FOR_EVAL = "ready_for_eval"
    IN_EVALUATION = "in_evaluation"
    COMPLETED = "completed"
    STUCK = "stuck"  # Marked researching but holds no handle


# =============================================================================
# Persisted Entities
# =============================================================================


class Project(BaseModel):
    """Namespace grouping resources, runs and hypotheses."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    deleted_at: datetime | None = None


class Resource(BaseModel):
    """A text document used as pipeline input."""

    id: str = Field(default_factory=new_id)
    project_id: str
    type: ResourceType
    name: str
    content: str
    created_at: datetime = Field(default_factory=datetime.now)


class ExistingFilter(BaseModel):
    """Scopes the previous-hypotheses summary used for deduplication."""

    enabled: bool = False
    target_spec_ids: list[str] = Field(default_factory=list)
    technical_assets_ids: list[str] = Field(default_factory=list)


class ValidationMetadata(BaseModel):
    is_valid: bool = False
    count: int = 0
    expected: int = 0
    errors: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    retried: bool = False


class Run(BaseModel):
    """One execution of the pipeline against a resource pair."""

    id: str = Field(default_factory=new_id)
    project_id: str
    target_spec_id: str
    technical_assets_id: str
    job_name: str = ""
    hypothesis_count: int = Field(default=5, ge=1)
    loop_count: int = Field(default=1, ge=1)
    strategy: ResearchStrategyName = ResearchStrategyName.SHARED
    existing_filter: ExistingFilter | None = None

    status: RunStatus = RunStatus.PENDING
    current_step: int = Field(default=2, ge=2, le=5)
    current_loop: int = Field(default=1, ge=1)

    step2_output: str | None = None
    step3_output: str | None = None
    step4_output: str | None = None
    step5_output: str | None = None

    integrated_list: list[dict[str, str]] | None = None
    validation_metadata: ValidationMetadata | None = None
    progress_info: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    resume_count: int = 0

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @property
    def is_last_loop(self) -> bool:
        return self.current_loop >= self.loop_count


class Hypothesis(BaseModel):
    """A structured business hypothesis extracted from the integration table."""

    id: str = Field(default_factory=new_id)
    project_id: str
    run_id: str | None = None
    target_spec_id: str | None = None
    technical_assets_id: str | None = None
    hypothesis_number: int
    loop: int | None = None
    title: str | None = None
    industry: str | None = None
    field: str | None = None
    business_summary: str | None = None
    customer_problem: str | None = None
    scientific_judgment: str | None = None
    scientific_score: float | None = None
    strategic_judgment: str | None = None
    strategic_win_level: str | None = None
    catchup_score: float | None = None
    total_score: float | None = None
    full_data: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    deleted_at: datetime | None = None


class PromptVersion(BaseModel):
    """A version-controlled override of a step prompt."""

    id: str = Field(default_factory=new_id)
    step_number: int = Field(ge=2, le=5)
    version: int = 1
    content: str
    is_active: bool = False
    created_at: datetime = Field(default_factory=datetime.now)


class ResearchItem(BaseModel):
    """Per-hypothesis unit of work for the fan-out strategy."""

    id: str = Field(default_factory=new_id)
    run_id: str
    loop: int
    item_index: int
    title: str
    brief: dict[str, Any] = Field(default_factory=dict)
    status: ItemStatus = ItemStatus.PENDING
    interaction_id: str | None = None
    research_output: str | None = None
    step3_output: str | None = None
    step4_output: str | None = None
    step5_output: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def phase(self) -> ItemPhase:
        if self.status == ItemStatus.PENDING:
            return ItemPhase.PENDING
        if self.status == ItemStatus.RESEARCHING:
            return ItemPhase.POLLING if self.interaction_id else ItemPhase.STUCK
        if self.status == ItemStatus.RESEARCHED:
            return ItemPhase.READY_FOR_EVAL
        if self.status == ItemStatus.EVALUATING:
            return ItemPhase.IN_EVALUATION
        return ItemPhase.COMPLETED


# =============================================================================
# Extraction and Research Results
# =============================================================================


class ExtractedHypothesis(BaseModel):
    """Hypothesis skeleton extracted from a free-text research report."""

    title: str = ""
    tradeoff: str = ""
    mechanism: str = ""
    moat: str = ""

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = ("title", "tradeoff", "mechanism", "moat")

    def missing_fields(self) -> list[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name).strip()]


class ValidationResult(BaseModel):
    """Outcome of extracting and validating a research report."""

    count: int = 0
    expected: int = 0
    is_valid: bool = False
    errors: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    extracted: list[ExtractedHypothesis] = Field(default_factory=list)
    action: ValidationAction = ValidationAction.ERROR
    retried: bool = False

    def to_metadata(self) -> ValidationMetadata:
        return ValidationMetadata(
            is_valid=self.is_valid,
            count=self.count,
            expected=self.expected,
            errors=list(self.errors),
            notes=list(self.notes),
            retried=self.retried,
        )


class ResearchPoll(BaseModel):
    status: ResearchStatus
    result: str | None = None
    error: str | None = None


# =============================================================================
# API Requests
# =============================================================================


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class ResourceCreate(BaseModel):
    type: ResourceType
    name: str = Field(min_length=1)
    content: str


class ResourceUpdate(BaseModel):
    name: str | None = None
    content: str | None = None


class RunCreate(BaseModel):
    """Payload for creating a run."""

    target_spec_id: str
    technical_assets_id: str
    hypothesis_count: int = Field(default=5, ge=1, le=50)
    loop_count: int = Field(default=1, ge=1, le=20)
    job_name: str = ""
    existing_filter: ExistingFilter | None = None
    strategy: ResearchStrategyName | None = None


class PromptCreate(BaseModel):
    content: str = Field(min_length=1)
    activate: bool = True


# =============================================================================
# Configuration
# =============================================================================


class PipelineConfig(BaseModel):
    """Configuration for the pipeline engine."""

    gemini_api_key: str = Field(default="", repr=False)
    pro_model: str = Field(default="gemini-3-pro-preview")
    flash_model: str = Field(default="gemini-3-flash-preview")
    research_agent: str = Field(default="deep-research-pro-preview-12-2025")
    api_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    db_path: str = Field(default="asip.db")
    strategy: ResearchStrategyName = ResearchStrategyName.SHARED
    max_output_tokens: int = Field(default=65536, ge=1)
    research_poll_interval: float = Field(
        default=15.0, ge=0.0, description="Seconds between research status checks."
    )
    research_timeout: float = Field(
        default=1800.0, ge=1.0, description="Ceiling for a single research interaction."
    )
    research_min_interval: float = Field(
        default=6.0, ge=0.0, description="Minimum spacing between research starts."
    )
    store_poll_interval: float = Field(default=3.0, ge=0.0)
    store_max_polls: int = Field(default=100, ge=1)
    max_concurrent: int = Field(
        default=5, ge=1, description="Open research handles allowed per run."
    )
    max_retries: int = Field(
        default=1, ge=0, description="Regeneration attempts for an insufficient count."
    )
    step_budget_seconds: float | None = Field(
        default=None, description="Wall-clock budget per sequencer drive; None runs to completion."
    )
    stale_run_seconds: float = Field(
        default=300.0, ge=0.0, description="Idle time after which an active run is nudged."
    )

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from environment variables, keeping defaults for unset ones."""
        values: dict[str, Any] = {
            "gemini_api_key": os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
        }
        env_map = {
            "pro_model": "ASIP_PRO_MODEL",
            "flash_model": "ASIP_FLASH_MODEL",
            "research_agent": "ASIP_RESEARCH_AGENT",
            "db_path": "ASIP_DB_PATH",
            "strategy": "ASIP_RESEARCH_STRATEGY",
            "research_poll_interval": "ASIP_RESEARCH_POLL_INTERVAL",
            "research_timeout": "ASIP_RESEARCH_TIMEOUT",
            "research_min_interval": "ASIP_RESEARCH_MIN_INTERVAL",
            "max_concurrent": "ASIP_MAX_CONCURRENT",
            "max_retries": "ASIP_MAX_RETRIES",
            "step_budget_seconds": "ASIP_STEP_BUDGET_SECONDS",
            "stale_run_seconds": "ASIP_STALE_RUN_SECONDS",
        }
        for field_name, env_name in env_map.items():
            value = os.getenv(env_name)
            if value:
                values[field_name] = value
        return cls(**values)

    @property
    def has_credentials(self) -> bool:
        return bool(self.gemini_api_key)
