"""
Plugin system for the groupwise operator.

This package provides the plugin architecture for convergence engines and
input sources.
"""

from plugins.base import EngineError, RequeueNeeded, RequeueNeededAfter
from plugins.registry import PluginRegistry, register_builtin_plugins

__all__ = [
    "EngineError",
    "RequeueNeeded",
    "RequeueNeededAfter",
    "PluginRegistry",
    "register_builtin_plugins",
]
