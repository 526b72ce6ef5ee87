"""
HTTP Input Plugin.

Serves the REST API and diagnostic event streams for resources and
resource groups.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
