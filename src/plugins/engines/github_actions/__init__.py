"""
GitHub Actions engine.

Converges and tears down resources by running a workflow_dispatch workflow.
"""

from plugins.engines.github_actions.executor import GitHubActionsEngine

__all__ = ["GitHubActionsEngine"]
