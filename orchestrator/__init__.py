# ============================================================================
# ORCHESTRATOR MODULE
# ============================================================================
# STATUS: Core - Execution controller
# PURPOSE: Drive the job graph of every active run
# CREATED: 19 OCT 2026
# ============================================================================
"""
Orchestrator Module

The scheduler that drives run execution.

Usage:
    from orchestrator import Scheduler

    scheduler = Scheduler(environment_service, artifact_store, event_service)
    controller = scheduler.start_run(run)
    await controller.wait()
"""

from orchestrator.scheduler import Scheduler, RunController

__all__ = ["Scheduler", "RunController"]
