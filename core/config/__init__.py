# ============================================================================
# CONFIGURATION MODULE
# ============================================================================
# STATUS: Core - Configuration and defaults
# PURPOSE: Centralized configuration management
# CREATED: 19 OCT 2026
# ============================================================================
"""
Configuration Module

Provides centralized configuration and defaults for the pipeline orchestrator.
"""

from core.config.defaults import (
    SchedulerDefaults,
    ApprovalDefaults,
    ArtifactDefaults,
    TriggerDefaults,
    Defaults,
    get_defaults,
    reset_defaults,
)

__all__ = [
    "SchedulerDefaults",
    "ApprovalDefaults",
    "ArtifactDefaults",
    "TriggerDefaults",
    "Defaults",
    "get_defaults",
    "reset_defaults",
]
