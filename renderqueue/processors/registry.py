"""
Processor registry.

A processor is the executable unit behind a workflow capability. It
receives the leased job through a ProcessorContext and returns a dict that
the worker merges into the job's result, or raises to signal failure.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from renderqueue.constants import Capability
from renderqueue.types.job import ProcessorContext

logger = logging.getLogger(__name__)

# Type alias for processor functions
Processor = Callable[[ProcessorContext], Awaitable[dict[str, Any] | None]]

# Processor registry
_processors: dict[str, Processor] = {}


def register_processor(capability: Capability) -> Callable[[Processor], Processor]:
    """
    Decorator to register the processor for a capability.

    Args:
        capability: The capability this processor implements.

    Returns:
        Decorator function.

    Example:
        @register_processor(Capability.NOOP)
        async def process_noop(context: ProcessorContext) -> dict:
            ...
    """
    def decorator(processor: Processor) -> Processor:
        _processors[str(capability)] = processor
        logger.debug("Registered processor", extra={"capability": str(capability)})
        return processor
    return decorator


def get_registered_processors() -> dict[str, Processor]:
    """Snapshot of the registry, used to build a WorkflowRegistry."""
    return dict(_processors)
