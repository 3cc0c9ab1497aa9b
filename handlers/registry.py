# ============================================================================
# HANDLER REGISTRY
# ============================================================================
# STATUS: Core - Step handler registration and lookup
# PURPOSE: Register and discover `uses:` step handlers by name
# CREATED: 19 OCT 2026
# ============================================================================
"""
Handler Registry

Central registry for step handlers. The local runner uses this to look
up the function behind a step's `uses:` reference.

Design:
- Handlers are registered at import time via decorator
- Registry is a simple dict (handler_name -> handler_func)
- Fail-fast on duplicate registration
- Supports both sync and async handlers
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)


# ============================================================================
# HANDLER TYPES
# ============================================================================

@dataclass
class HandlerContext:
    """
    Context passed to handler functions.

    inputs are the step's resolved `with` values; job_inputs carry the
    JobRun's own inputs (the last-known-good marker of a rollback job).
    """
    run_id: str
    job: str
    step: str
    handler: str
    inputs: Dict[str, Any]
    timeout_seconds: int
    attempt: int = 1
    pipeline_id: Optional[str] = None
    environment: Optional[str] = None
    secret_scope: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    job_inputs: Dict[str, Any] = field(default_factory=dict)
    downloads: Dict[str, Any] = field(default_factory=dict)

    def get_input(self, key: str, default: Any = None) -> Any:
        """Step input first, then job input."""
        if key in self.inputs:
            return self.inputs[key]
        return self.job_inputs.get(key, default)


@dataclass
class HandlerResult:
    """
    Result returned by handler functions.

    outputs become the step's outputs; artifacts are written to the
    artifact store under the producing job.
    """
    success: bool = True
    outputs: Dict[str, Any] = field(default_factory=dict)
    artifacts: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    exit_code: Optional[int] = None

    @classmethod
    def success_result(
        cls,
        outputs: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> "HandlerResult":
        """Create a success result."""
        return cls(success=True, outputs=outputs or {}, **kwargs)

    @classmethod
    def failure_result(
        cls,
        error_message: str,
        outputs: Optional[Dict[str, Any]] = None,
        exit_code: int = 1,
    ) -> "HandlerResult":
        """Create a failure result."""
        return cls(success=False, error_message=error_message, outputs=outputs or {}, exit_code=exit_code)


# Handler function type
HandlerFunc = Callable[[HandlerContext], Union[HandlerResult, Awaitable[HandlerResult]]]


# ============================================================================
# EXCEPTIONS
# ============================================================================

class HandlerError(Exception):
    """Base exception for handler errors."""
    pass


class HandlerNotFoundError(HandlerError):
    """Raised when a handler is not found in the registry."""
    def __init__(self, handler_name: str):
        self.handler_name = handler_name
        super().__init__(f"Handler not found: {handler_name}")


class DuplicateHandlerError(HandlerError):
    """Raised when a handler name is already registered."""
    def __init__(self, handler_name: str):
        self.handler_name = handler_name
        super().__init__(f"Handler already registered: {handler_name}")


# ============================================================================
# REGISTRY
# ============================================================================

# Global registry
_handlers: Dict[str, HandlerFunc] = {}
_handler_metadata: Dict[str, Dict[str, Any]] = {}


def register_handler(
    name: str,
    *,
    description: str = "",
    timeout_seconds: int = 3600,
    tags: Optional[List[str]] = None,
) -> Callable[[HandlerFunc], HandlerFunc]:
    """
    Decorator to register a handler function.

    Example:
        @register_handler("publish", description="Publish a bundle")
        async def publish(ctx: HandlerContext) -> HandlerResult:
            return HandlerResult.success_result({"url": "..."})
    """
    def decorator(func: HandlerFunc) -> HandlerFunc:
        if name in _handlers:
            raise DuplicateHandlerError(name)

        _handlers[name] = func
        _handler_metadata[name] = {
            "name": name,
            "description": description,
            "timeout_seconds": timeout_seconds,
            "tags": tags or [],
            "function": func.__name__,
            "module": func.__module__,
            "is_async": asyncio.iscoroutinefunction(func),
            "registered_at": datetime.now(timezone.utc).isoformat(),
        }

        logger.debug(f"Registered handler: {name} ({func.__module__}.{func.__name__})")
        return func

    return decorator


def get_handler(name: str) -> Optional[HandlerFunc]:
    return _handlers.get(name)


def get_handler_or_raise(name: str) -> HandlerFunc:
    """
    Get a handler by name, raising if not found.

    Raises:
        HandlerNotFoundError if handler not found
    """
    handler = _handlers.get(name)
    if handler is None:
        raise HandlerNotFoundError(name)
    return handler


def list_handlers() -> List[Dict[str, Any]]:
    """List all registered handlers with metadata."""
    return list(_handler_metadata.values())


def get_handler_metadata(name: str) -> Optional[Dict[str, Any]]:
    return _handler_metadata.get(name)


def unregister_handler(name: str) -> bool:
    """Remove one handler. Primarily for testing."""
    _handler_metadata.pop(name, None)
    return _handlers.pop(name, None) is not None


def validate_handlers(handler_names: List[str]) -> List[str]:
    """
    Validate that every `uses:` reference is registered.

    Returns:
        List of missing handler names (empty if all valid)
    """
    return [name for name in handler_names if name not in _handlers]


# ============================================================================
# ASYNC HANDLER EXECUTION
# ============================================================================

async def execute_handler(
    name: str,
    context: HandlerContext,
    reraise: Tuple[Type[BaseException], ...] = (),
) -> HandlerResult:
    """
    Execute a handler by name.

    Handles both sync and async handlers. Exceptions become failure
    results, except those listed in `reraise` (runner errors).

    Raises:
        HandlerNotFoundError if handler not found
    """
    handler = get_handler_or_raise(name)

    try:
        if asyncio.iscoroutinefunction(handler):
            result = await handler(context)
        else:
            # Run sync handler in thread pool
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, handler, context)

        if result is None:
            return HandlerResult.success_result()
        return result

    except reraise:
        raise
    except Exception as e:
        logger.exception(f"Handler {name} failed: {e}")
        return HandlerResult.failure_result(f"{type(e).__name__}: {e}")


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "register_handler",
    "get_handler",
    "get_handler_or_raise",
    "list_handlers",
    "get_handler_metadata",
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
