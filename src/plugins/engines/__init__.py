"""
Convergence engine plugins package.

Engines make external systems match a resource's spec (GitHub Actions
workflows running Terraform, Ansible, etc.) and tear that state down again.
"""

from plugins.engines.base import ConvergenceEngine

__all__ = ["ConvergenceEngine"]
