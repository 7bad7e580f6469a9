"""
Processors for workflow capabilities.

Importing this package registers every built-in processor.
"""

from renderqueue.processors import basic, download, generation, tagging, webhook
from renderqueue.processors.registry import (
    Processor,
    get_registered_processors,
    register_processor,
)

__all__ = [
    "Processor",
    "basic",
    "download",
    "generation",
    "get_registered_processors",
    "register_processor",
    "tagging",
    "webhook",
]
