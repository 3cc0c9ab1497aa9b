# ============================================================================
# CONFIGURATION DEFAULTS
# ============================================================================
# STATUS: Core - Default configuration values
# PURPOSE: Centralized defaults for scheduling, approvals, artifacts, triggers
# CREATED: 19 OCT 2026
# ============================================================================
"""
Configuration Defaults

Provides sensible defaults for the orchestrator.
These can be overridden via environment variables or per pipeline.

Design:
- Immutable dataclasses for defaults
- Environment variable overrides
- Type-safe access
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from core.contracts import SkippedNeedsPolicy


@dataclass(frozen=True)
class SchedulerDefaults:
    """
    Defaults for the execution controller.

    runner_slots bounds concurrently running jobs across all runs; a
    pipeline's `concurrency` can only lower it.
    """
    runner_slots: int = 4
    skipped_needs_policy: SkippedNeedsPolicy = SkippedNeedsPolicy.SATISFIED
    max_infra_retries: int = 0
    default_step_timeout_seconds: int = 3600  # 1 hour

    @classmethod
    def from_env(cls) -> "SchedulerDefaults":
        """Create from environment variables."""
        return cls(
            runner_slots=int(os.getenv("RUNNER_SLOTS", 4)),
            skipped_needs_policy=SkippedNeedsPolicy(
                os.getenv("SKIPPED_NEEDS_POLICY", SkippedNeedsPolicy.SATISFIED.value).lower()
            ),
            max_infra_retries=int(os.getenv("MAX_INFRA_RETRIES", 0)),
            default_step_timeout_seconds=int(os.getenv("DEFAULT_STEP_TIMEOUT_SECONDS", 3600)),
        )


@dataclass(frozen=True)
class ApprovalDefaults:
    """Defaults for environment approval gates."""
    # Used when an environment sets no wait_timeout_seconds
    approval_timeout_seconds: int = 24 * 3600

    @classmethod
    def from_env(cls) -> "ApprovalDefaults":
        return cls(
            approval_timeout_seconds=int(os.getenv("APPROVAL_TIMEOUT_SECONDS", 24 * 3600)),
        )


@dataclass(frozen=True)
class ArtifactDefaults:
    """Retention of run-scoped artifact partitions and deploy markers."""
    retention_seconds: int = 7 * 24 * 3600
    markers_per_environment: int = 50

    @classmethod
    def from_env(cls) -> "ArtifactDefaults":
        return cls(
            retention_seconds=int(os.getenv("ARTIFACT_RETENTION_SECONDS", 7 * 24 * 3600)),
            markers_per_environment=int(os.getenv("DEPLOY_MARKERS_PER_ENVIRONMENT", 50)),
        )


@dataclass(frozen=True)
class TriggerDefaults:
    """Schedule ticker polling."""
    schedule_tick_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "TriggerDefaults":
        return cls(
            schedule_tick_seconds=float(os.getenv("SCHEDULE_TICK_SECONDS", 1.0)),
        )


@dataclass
class Defaults:
    """Container for all default configurations."""
    scheduler: SchedulerDefaults = field(default_factory=SchedulerDefaults)
    approvals: ApprovalDefaults = field(default_factory=ApprovalDefaults)
    artifacts: ArtifactDefaults = field(default_factory=ArtifactDefaults)
    triggers: TriggerDefaults = field(default_factory=TriggerDefaults)

    @classmethod
    def from_env(cls) -> "Defaults":
        """Create all defaults from environment variables."""
        return cls(
            scheduler=SchedulerDefaults.from_env(),
            approvals=ApprovalDefaults.from_env(),
            artifacts=ArtifactDefaults.from_env(),
            triggers=TriggerDefaults.from_env(),
        )


_defaults: Optional[Defaults] = None


def get_defaults() -> Defaults:
    """Get global defaults instance."""
    global _defaults
    if _defaults is None:
        _defaults = Defaults.from_env()
    return _defaults


def reset_defaults() -> None:
    """Reset defaults (for testing)."""
    global _defaults
    _defaults = None


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "SchedulerDefaults",
    "ApprovalDefaults",
    "ArtifactDefaults",
    "TriggerDefaults",
    "Defaults",
    "get_defaults",
    "reset_defaults",
]
