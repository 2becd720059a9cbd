"""Pipeline configuration schemas.

Top-level configuration handed to the orchestrator: the ordered promotion
path, the retry policy, the classifier tuning and webhook notifications.
Loaded from YAML by ``ratchet_core.pipeline.config.load_pipeline_config``.

Key Components:
    RetryConfig: Deterministic exponential backoff parameters
    ClassifierConfig: Risk scoring weights, thresholds and path patterns
    WebhookConfig: Outward notification endpoint
    PipelineConfig: Root configuration model

Example:
    >>> config = PipelineConfig(
    ...     application="orders-api",
    ...     environments=[
    ...         EnvironmentConfig(name="dev", promotion_order=10),
    ...         EnvironmentConfig(name="prod", promotion_order=20, requires_approval=True),
    ...     ],
    ... )
    >>> [env.name for env in config.promotion_path]
    ['dev', 'prod']
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ratchet_core.schemas.environment import EnvironmentConfig
from ratchet_core.schemas.stage import StageKind

VALID_WEBHOOK_EVENTS = frozenset(
    {
        "approval_requested",
        "promoted",
        "completed",
        "failed",
        "rolled_back",
        "rollback_failed",
        "cancelled",
    }
)
"""Pipeline lifecycle events a webhook may subscribe to."""


class RetryConfig(BaseModel):
    """Retry policy for transient stage failures.

    Backoff is deterministic: the delay before attempt ``n + 1`` is
    ``min(initial_delay_ms * backoff_multiplier ** n, max_delay_ms)``.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of executor invocations per stage",
    )
    initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Base delay between attempts in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )

    @model_validator(mode="after")
    def validate_delay_cap(self) -> RetryConfig:
        """Ensure the cap is not below the initial delay."""
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"initial_delay_ms ({self.initial_delay_ms})"
            )
        return self


class ClassifierConfig(BaseModel):
    """Tuning for ChangeClassifier.

    Path patterns use shell-style globbing where ``*`` also matches ``/``.

    Attributes:
        base_score: Starting risk score.
        threshold: Scores at or above this classify as normal (inclusive).
        hard_ceiling: Above this score the operational label is ignored.
        infra_patterns: Paths counted as infrastructure-only.
        docs_patterns: Paths counted as documentation-only.
        security_patterns: Paths that raise risk and force normal.
        large_change_lines: Changed lines above which the change is large.
        many_files_threshold: File count above which the change is wide.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_score: int = Field(default=30, ge=0, le=100)
    threshold: int = Field(default=50, ge=0, le=100)
    hard_ceiling: int = Field(default=75, ge=0, le=100)
    infra_only_adjustment: int = Field(default=-20, ge=-100, le=100)
    docs_only_adjustment: int = Field(default=-20, ge=-100, le=100)
    security_adjustment: int = Field(default=50, ge=-100, le=100)
    large_change_adjustment: int = Field(default=15, ge=-100, le=100)
    many_files_adjustment: int = Field(default=10, ge=-100, le=100)
    large_change_lines: int = Field(default=500, ge=0)
    many_files_threshold: int = Field(default=20, ge=0)
    infra_patterns: tuple[str, ...] = Field(
        default=("terraform/*", "*.tf", "*.tfvars", "infra/*"),
    )
    docs_patterns: tuple[str, ...] = Field(
        default=("docs/*", "*.md", "*.rst"),
    )
    security_patterns: tuple[str, ...] = Field(
        default=("auth/*", "*/auth/*", "security/*", "*/security/*", "iam/*", "*/iam/*"),
    )

    @model_validator(mode="after")
    def validate_ceiling(self) -> ClassifierConfig:
        """Ensure the label ceiling is not below the threshold."""
        if self.hard_ceiling < self.threshold:
            raise ValueError(
                f"hard_ceiling ({self.hard_ceiling}) must be >= threshold ({self.threshold})"
            )
        return self


class WebhookConfig(BaseModel):
    """Webhook notification configuration.

    Attributes:
        url: Webhook endpoint URL.
        events: Event types to notify.
        headers: Custom headers (e.g., for authentication).
        timeout_seconds: Request timeout in seconds.
        retry_count: Number of retries on failure.

    Examples:
        >>> config = WebhookConfig(
        ...     url="https://hooks.example.com/deployments",
        ...     events=["approval_requested", "rollback_failed"],
        ... )
        >>> config.timeout_seconds
        30
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1, description="Webhook endpoint URL")
    events: list[str] = Field(..., min_length=1, description="Event types to notify")
    headers: dict[str, str] | None = Field(default=None)
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    retry_count: int = Field(default=3, ge=0, le=10)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        """Validate all events are known pipeline events."""
        invalid = set(v) - VALID_WEBHOOK_EVENTS
        if invalid:
            raise ValueError(
                f"Invalid event types: {invalid}. Valid types: {sorted(VALID_WEBHOOK_EVENTS)}"
            )
        return v


class PipelineConfig(BaseModel):
    """Root configuration of one application's deployment pipeline.

    Attributes:
        application: Application name; locks are keyed by (application, environment).
        environments: Deployment targets; order in the list is irrelevant,
            ``promotion_order`` decides the path.
        retry: Default retry policy for every stage.
        stage_retry: Per stage-kind overrides of ``retry``.
        classifier: Classifier tuning.
        webhooks: Outward notification endpoints.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    application: str = Field(..., min_length=1, description="Application name")
    environments: list[EnvironmentConfig] = Field(
        ...,
        min_length=1,
        description="Deployment targets",
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)
    stage_retry: dict[StageKind, RetryConfig] = Field(default_factory=dict)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    webhooks: list[WebhookConfig] | None = Field(default=None)

    @field_validator("environments")
    @classmethod
    def validate_unique_environments(
        cls, v: list[EnvironmentConfig]
    ) -> list[EnvironmentConfig]:
        """Validate that environment names and promotion orders are unique."""
        names = [env.name for env in v]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(
                f"Environment names must be unique. Duplicates found: {duplicates}"
            )
        orders = [env.promotion_order for env in v]
        duplicate_orders = {order for order in orders if orders.count(order) > 1}
        if duplicate_orders:
            raise ValueError(
                f"promotion_order must be unique. Duplicates found: {duplicate_orders}"
            )
        return v

    @property
    def promotion_path(self) -> list[EnvironmentConfig]:
        """All environments in ascending promotion order, skipped ones included."""
        return sorted(self.environments, key=lambda env: env.promotion_order)

    def retry_for(self, kind: StageKind) -> RetryConfig:
        """Return the retry policy that applies to a stage kind."""
        return self.stage_retry.get(kind, self.retry)

    def get_environment(self, name: str) -> EnvironmentConfig | None:
        """Look up an environment by name."""
        for env in self.environments:
            if env.name == name:
                return env
        return None


__all__ = [
    "VALID_WEBHOOK_EVENTS",
    "ClassifierConfig",
    "PipelineConfig",
    "RetryConfig",
    "WebhookConfig",
]
