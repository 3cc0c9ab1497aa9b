# ============================================================================
# HANDLER REGISTRY
# ============================================================================
# STATUS: Core - Handler registration and lookup
# PURPOSE: Register and discover step handlers
# CREATED: 19 OCT 2026
# ============================================================================
"""
Handler Registry

Provides a decorator-based registration system for `uses:` step handlers.

Usage:
    from handlers import register_handler, HandlerContext, HandlerResult

    @register_handler("publish")
    async def publish(ctx: HandlerContext) -> HandlerResult:
        return HandlerResult.success_result(outputs={"url": "..."})

A pipeline step then declares `uses: publish`.
"""

from handlers.registry import (
    register_handler,
    get_handler,
    get_handler_or_raise,
    list_handlers,
    unregister_handler,
    validate_handlers,
    execute_handler,
    HandlerFunc,
    HandlerContext,
    HandlerResult,
    HandlerError,
    HandlerNotFoundError,
    DuplicateHandlerError,
)

# Import handler modules to trigger registration
import handlers.builtin  # noqa: F401 - import for side effects (echo, deploy, rollback, ...)

__all__ = [
    "register_handler",
    "get_handler",
    "get_handler_or_raise",
    "list_handlers",
    "unregister_handler",
    "validate_handlers",
    "execute_handler",
    "HandlerFunc",
    "HandlerContext",
    "HandlerResult",
    "HandlerError",
    "HandlerNotFoundError",
    "DuplicateHandlerError",
]
