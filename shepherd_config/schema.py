"""
shepherd_config.schema -- Frozen configuration dataclasses.

Every section has defaults, so an empty YAML document is a valid
configuration.  Cross-field checks live in ``ShepherdConfig.validate``.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///shepherd.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    sqlite_busy_timeout: float = 30.0


@dataclass(frozen=True)
class WorkerConfig:
    general_pool_size: int = 100
    provider_pool_size: int = 50
    poll_interval_seconds: float = 1.0
    lease_seconds: float = 300.0
    provider_timeout_seconds: float = 60.0
    shutdown_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 300.0
    transaction_conflict_attempts: int = 3


@dataclass(frozen=True)
class RetentionConfig:
    archive_events_after_days: int = 90
    prune_jobs_after_days: int = 7


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class ApprovalRuleDef:
    """Rule as written in YAML; compiled into a domain ApprovalRule."""

    name: str
    priority: int = 100
    actions: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    namespaces: tuple[str, ...] = ()
    max_cpu: int | None = None
    max_memory_mb: int | None = None
    description: str = ""


@dataclass(frozen=True)
class ApprovalPolicyConfig:
    rules: tuple[ApprovalRuleDef, ...] = ()


@dataclass(frozen=True)
class ShepherdConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    approval: ApprovalPolicyConfig = field(default_factory=ApprovalPolicyConfig)
    checksum: str = ""

    def validate(self) -> list[str]:
        """Return every problem found; empty means valid."""
        errors: list[str] = []
        w, r = self.worker, self.retry

        for name in ("general_pool_size", "provider_pool_size"):
            if getattr(w, name) <= 0:
                errors.append(f"worker.{name} must be positive")
        for name in ("poll_interval_seconds", "lease_seconds", "provider_timeout_seconds"):
            if getattr(w, name) <= 0:
                errors.append(f"worker.{name} must be positive")
        if w.provider_pool_size > w.general_pool_size:
            errors.append("worker.provider_pool_size cannot exceed worker.general_pool_size")
        if w.lease_seconds <= w.provider_timeout_seconds:
            errors.append("worker.lease_seconds must be longer than worker.provider_timeout_seconds")

        if r.max_attempts <= 0:
            errors.append("retry.max_attempts must be positive")
        if r.transaction_conflict_attempts <= 0:
            errors.append("retry.transaction_conflict_attempts must be positive")
        if r.backoff_base_seconds <= 0:
            errors.append("retry.backoff_base_seconds must be positive")
        if r.backoff_multiplier <= 1:
            errors.append("retry.backoff_multiplier must be greater than 1")
        if r.backoff_max_seconds < r.backoff_base_seconds:
            errors.append("retry.backoff_max_seconds must be >= retry.backoff_base_seconds")

        if self.retention.archive_events_after_days <= 0:
            errors.append("retention.archive_events_after_days must be positive")
        if self.retention.prune_jobs_after_days <= 0:
            errors.append("retention.prune_jobs_after_days must be positive")

        names = [rule.name for rule in self.approval.rules]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            errors.append(f"approval.rules has duplicate names: {', '.join(duplicates)}")
        return errors
