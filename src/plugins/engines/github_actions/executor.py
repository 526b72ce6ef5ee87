"""
GitHub Actions Engine - Implements ConvergenceEngine with workflow runs.

Every converge or teardown dispatches a ``workflow_dispatch`` workflow and
waits for the run to finish. The workflow receives these string inputs:

- operation: 'converge' or 'teardown'
- resource: 'namespace/name'
- group: 'namespace/name' of the resource group, or ''
- generation: the resource generation
- spec: the resource spec as JSON
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import aiohttp

from plugins.base import EngineError
from plugins.engines.base import ConvergenceEngine
from store import ManagedResource

logger = logging.getLogger(__name__)

OPERATION_CONVERGE = "converge"
OPERATION_TEARDOWN = "teardown"


class GitHubActionsEngine(ConvergenceEngine):
    """
    Convergence engine that runs a GitHub Actions workflow.

    Every call dispatches a new run; the workflow itself must be idempotent.
    Dispatches are serialized so that each caller claims only the run it
    started. A run still in progress when the wait times out or is cancelled
    is cancelled on GitHub as well.
    """

    def __init__(self):
        self.github_token: Optional[str] = None
        self.api_base_url: str = "https://api.github.com"
        self.owner: str = ""
        self.repo: str = ""
        self.workflow: str = ""
        self.ref: str = "main"
        # Below the controller's default RECONCILE_TIMEOUT of 900s
        self.timeout: int = 600
        self.poll_interval: int = 10  # seconds between status checks
        self._session: Optional[aiohttp.ClientSession] = None
        # Held from the pre-dispatch snapshot until the new run is identified
        self._dispatch_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "github_actions"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load GitHub Actions engine configuration from environment variables."""
        return {
            "github_token": os.getenv("GITHUB_TOKEN", ""),
            "api_base_url": os.getenv("GITHUB_API_URL", "https://api.github.com"),
            "owner": os.getenv("GITHUB_OWNER", ""),
            "repo": os.getenv("GITHUB_REPO", ""),
            "workflow": os.getenv("GITHUB_WORKFLOW", ""),
            "ref": os.getenv("GITHUB_REF", "main"),
            "timeout": int(os.getenv("GITHUB_ACTIONS_TIMEOUT", "600")),
            "poll_interval": int(os.getenv("GITHUB_ACTIONS_POLL_INTERVAL", "10")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.github_token = config.get("github_token")
        self.api_base_url = config.get("api_base_url", self.api_base_url).rstrip("/")
        self.owner = config.get("owner", self.owner)
        self.repo = config.get("repo", self.repo)
        self.workflow = str(config.get("workflow", self.workflow))
        self.ref = config.get("ref", self.ref)
        self.timeout = config.get("timeout", self.timeout)
        self.poll_interval = config.get("poll_interval", self.poll_interval)

        if not self.github_token:
            logger.warning(
                "GitHub token not configured. Set GITHUB_TOKEN environment variable."
            )
        if not (self.owner and self.repo and self.workflow):
            logger.warning(
                "GitHub workflow not configured. Set GITHUB_OWNER, GITHUB_REPO "
                "and GITHUB_WORKFLOW environment variables."
            )

        logger.debug(
            f"GitHub Actions engine initialized: {self.owner}/{self.repo} "
            f"workflow={self.workflow} ref={self.ref}, timeout={self.timeout}s, "
            f"poll_interval={self.poll_interval}s"
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def converge(self, resource: ManagedResource) -> None:
        await self._run_workflow(OPERATION_CONVERGE, resource)

    async def teardown(self, resource: ManagedResource) -> None:
        await self._run_workflow(OPERATION_TEARDOWN, resource)

    # Private helper methods

    def _workflow_inputs(
        self, operation: str, resource: ManagedResource
    ) -> Dict[str, str]:
        # workflow_dispatch inputs must all be strings
        return {
            "operation": operation,
            "resource": str(resource.identity),
            "group": str(resource.group) if resource.group else "",
            "generation": str(resource.generation),
            "spec": json.dumps(resource.spec, sort_keys=True),
        }

    async def _run_workflow(self, operation: str, resource: ManagedResource) -> None:
        """Dispatch the workflow and raise EngineError unless it succeeds."""
        inputs = self._workflow_inputs(operation, resource)

        run_id = await self._trigger_workflow(inputs)
        if run_id is None:
            raise EngineError(
                f"Failed to start workflow {self.workflow} for {resource.identity}",
                operation=operation,
            )

        try:
            final_status = await asyncio.wait_for(
                self._wait_for_completion(run_id), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            await self._cancel_run(run_id)
            raise EngineError(
                f"Workflow run {run_id} for {resource.identity} timed out "
                f"after {self.timeout}s",
                operation=operation,
            )
        except asyncio.CancelledError:
            await self._cancel_run(run_id)
            raise

        conclusion = final_status.get("conclusion")
        if conclusion != "success":
            raise EngineError(
                f"Workflow run {run_id} for {resource.identity} failed with "
                f"conclusion: {conclusion} ({final_status.get('html_url', 'N/A')})",
                operation=operation,
            )

        logger.info(
            f"Workflow run {run_id} ({operation}) for {resource.identity} "
            f"completed successfully"
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for GitHub API requests."""
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._get_headers())
        return self._session

    @property
    def _workflow_url(self) -> str:
        return (
            f"{self.api_base_url}/repos/{self.owner}/{self.repo}"
            f"/actions/workflows/{self.workflow}"
        )

    def _run_url(self, run_id: int) -> str:
        return (
            f"{self.api_base_url}/repos/{self.owner}/{self.repo}"
            f"/actions/runs/{run_id}"
        )

    async def _trigger_workflow(self, inputs: Dict[str, str]) -> Optional[int]:
        """Trigger a workflow dispatch and return the new run's ID."""
        async with self._dispatch_lock:
            return await self._dispatch_and_identify(inputs)

    async def _dispatch_and_identify(self, inputs: Dict[str, str]) -> Optional[int]:
        # Runs listed before dispatch, so the new one can be told apart
        before_run_ids = {r["id"] for r in await self._get_recent_runs()}

        session = self._get_session()
        async with session.post(
            f"{self._workflow_url}/dispatches",
            json={"ref": self.ref, "inputs": inputs},
        ) as response:
            if response.status not in (204, 200):
                error_text = await response.text()
                logger.error(
                    f"Failed to trigger workflow: {response.status} - {error_text}"
                )
                return None

        for _ in range(30):  # Wait up to 30 seconds for run to appear
            await asyncio.sleep(1)
            for run in await self._get_recent_runs():
                if run["id"] not in before_run_ids:
                    logger.info(f"Workflow run started: {run['id']}")
                    return run["id"]

        logger.error("Workflow was triggered but run ID could not be determined")
        return None

    async def _cancel_run(self, run_id: int) -> bool:
        """Cancel a workflow run that is still in progress."""
        session = self._get_session()
        try:
            async with session.post(f"{self._run_url(run_id)}/cancel") as response:
                if response.status == 202:
                    logger.info(f"Cancelled workflow run {run_id}")
                    return True
                logger.warning(
                    f"Failed to cancel workflow run {run_id}: {response.status}"
                )
        except aiohttp.ClientError as e:
            logger.warning(f"Failed to cancel workflow run {run_id}: {e}")
        return False

    async def _get_recent_runs(self) -> List[Dict[str, Any]]:
        session = self._get_session()
        async with session.get(
            f"{self._workflow_url}/runs",
            params={"per_page": 10, "event": "workflow_dispatch"},
        ) as response:
            if response.status == 200:
                data = await response.json()
                return data.get("workflow_runs", [])
            return []

    async def _get_run_status(self, run_id: int) -> Dict[str, Any]:
        session = self._get_session()
        async with session.get(self._run_url(run_id)) as response:
            if response.status == 200:
                return await response.json()
            raise EngineError(f"Failed to get run status: {response.status}")

    async def _wait_for_completion(self, run_id: int) -> Dict[str, Any]:
        """Poll a workflow run until it completes."""
        while True:
            status = await self._get_run_status(run_id)

            if status["status"] == "completed":
                return status

            logger.debug(
                f"Workflow run {run_id} status: {status['status']}, "
                f"waiting {self.poll_interval}s..."
            )
            await asyncio.sleep(self.poll_interval)
