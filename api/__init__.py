# ============================================================================
# API MODULE
# ============================================================================
# STATUS: Core - FastAPI routes
# PURPOSE: HTTP API for events, runs and approvals
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Module

FastAPI routes for the pipeline orchestrator.
"""

from .routes import router, set_services
from .schemas import (
    EventCreate,
    IngestResponse,
    RunResponse,
    RunDetailResponse,
    ApprovalDecisionCreate,
    ApprovalResponse,
)

__all__ = [
    "router",
    "set_services",
    "EventCreate",
    "IngestResponse",
    "RunResponse",
    "RunDetailResponse",
    "ApprovalDecisionCreate",
    "ApprovalResponse",
]
