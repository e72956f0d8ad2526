from .builtin import default_registry, http_request
from .registry import ToolRegistry

__all__ = [
    "ToolRegistry",
    "default_registry",
    "http_request",
]
