"""changegate — Orchestrator configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. Environment variables prefixed with CHANGEGATE_
       (nested keys use ``__``, e.g. CHANGEGATE_PLATFORM__TOKEN)
    3. System config: /etc/changegate/config.yaml
    4. User config:   ~/.changegate/config.yaml
    5. An explicit config file passed on the command line

All settings are immutable after load.  The pipeline (the build graph) is
read once at process start and never mutated at runtime.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from changegate.models import BuildNode


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class PlatformConfig(BaseModel):
    kind: Literal["github"] = "github"
    api_url: str = "https://api.github.com"
    owner: str = Field(
        default="",
        description="Default owner for repositories declared without an 'owner/' prefix.",
    )
    token: str | None = Field(
        default=None,
        description="API token. Usually set via CHANGEGATE_PLATFORM__TOKEN.",
    )
    request_timeout: Annotated[float, Field(gt=0, le=300)] = 30.0
    dispatch_lookup_attempts: Annotated[int, Field(ge=1, le=30)] = Field(
        default=10,
        description="How many times to look for the run created by a dispatch.",
    )
    dispatch_lookup_delay: Annotated[float, Field(ge=0, le=60)] = 2.0


class PollingConfig(BaseModel):
    interval_seconds: Annotated[float, Field(gt=0, le=600)] = 15.0
    timeout_seconds: Annotated[float, Field(gt=0, le=86_400)] = Field(
        default=3600.0,
        description="Deadline for one remote job, measured from the trigger call.",
    )
    max_poll_retries: Annotated[int, Field(ge=0, le=50)] = Field(
        default=5,
        description="Consecutive transient poll errors tolerated before giving up.",
    )
    retry_delay_seconds: Annotated[float, Field(ge=0, le=300)] = 2.0
    backoff_factor: Annotated[float, Field(ge=1.0, le=10.0)] = 2.0

    def delay_for_attempt(self, attempt: int) -> float:
        """Return the delay in seconds before the *attempt*-th retry (1-indexed)."""
        return self.retry_delay_seconds * (self.backoff_factor ** (attempt - 1))


class GateConfig(BaseModel):
    status_context: str = Field(
        default="changegate/change-set",
        description="Name of the status check written on every revision.",
    )
    branch_pattern: str = Field(
        default="{change_set}",
        description="Template rendered with the change set id to match open revisions.",
    )
    abort_on_invalidate: bool = Field(
        default=False,
        description=(
            "When True, an invalidation received mid-run stops the executor from "
            "starting further nodes. When False, it only suppresses the publish."
        ),
    )
    report_failures: bool = Field(
        default=True,
        description="Write a 'failure' status check when a run fails.",
    )
    run_lease_seconds: Annotated[float, Field(gt=0, le=86_400)] = Field(
        default=300.0,
        description=(
            "Lifetime of the run slot lease. A running orchestrator renews it every "
            "third of this period; a slot whose lease lapsed may be reclaimed."
        ),
    )

    @field_validator("branch_pattern")
    @classmethod
    def pattern_has_placeholder(cls, v: str) -> str:
        if "{change_set}" not in v:
            raise ValueError("branch_pattern must contain '{change_set}'.")
        return v

    def pattern_for(self, change_set_id: str) -> str:
        return self.branch_pattern.format(change_set=change_set_id)


class StateConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = "sqlite"
    db_path: Path = Path("~/.changegate/state.db")


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None


class NodeSpec(BaseModel):
    repository: str
    job: str
    depends_on: list[str] = Field(default_factory=list)


class PipelineConfig(BaseModel):
    """Static build graph declaration: node name -> {repository, job, depends_on}."""

    nodes: dict[str, NodeSpec] = Field(default_factory=dict)
    max_concurrency: int | None = Field(
        default=None,
        ge=1,
        le=256,
        description="Cap on simultaneously running nodes. None = no cap.",
    )

    @model_validator(mode="after")
    def dependencies_declared(self) -> "PipelineConfig":
        # Cycles are detected when the graph is built.
        for name, spec in self.nodes.items():
            for dep in spec.depends_on:
                if dep not in self.nodes:
                    raise ValueError(f"Node '{name}' depends on undeclared node '{dep}'.")
        return self

    def build_nodes(self) -> list[BuildNode]:
        return [
            BuildNode(
                name=name,
                repository=spec.repository,
                job=spec.job,
                depends_on=list(spec.depends_on),
            )
            for name, spec in self.nodes.items()
        ]


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHANGEGATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    @field_validator("state", mode="before")
    @classmethod
    def expand_state_path(cls, v: object) -> object:
        if isinstance(v, dict) and isinstance(v.get("db_path"), str):
            v["db_path"] = Path(v["db_path"]).expanduser()
        return v

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from file + environment variables."""
        data: dict[str, Any] = {}

        candidates = [
            Path("/etc/changegate/config.yaml"),
            Path.home() / ".changegate" / "config.yaml",
        ]
        if config_file:
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                import yaml

                with path.open() as f:
                    loaded = yaml.safe_load(f) or {}
                    data.update(loaded)

        return cls(**data)
