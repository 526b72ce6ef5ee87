"""Input plugins package."""

from plugins.inputs.base import InputPlugin

__all__ = ["InputPlugin"]
