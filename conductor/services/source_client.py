"""
Source Client
=============
Asks the source hosting API for the latest commit on the watched branch.

Contract:
    GET {SOURCE_API_URL}/repos/{repo_ref}/latest?branch=<branch>
    → {"latestCommitId": "<sha>"}
"""
import logging
from typing import Optional

import httpx

from conductor.core.config import HTTP_TIMEOUT_SECONDS, SOURCE_API_TOKEN, SOURCE_API_URL, SOURCE_BRANCH
from conductor.core.exceptions import ConfigurationError, TransientInfraError

logger = logging.getLogger(__name__)


class SourceClient:

    def __init__(
        self,
        base_url: str = SOURCE_API_URL,
        token: Optional[str] = SOURCE_API_TOKEN,
        branch: str = SOURCE_BRANCH,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.branch = branch
        self.headers = {"Accept": "application/json", "User-Agent": "pipeline-conductor"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def latest_commit(self, repo_ref: str) -> Optional[str]:
        """Return the head commit id, or None if the branch has no commits."""
        if not self.base_url:
            raise ConfigurationError("SOURCE_API_URL is not configured")

        url = f"{self.base_url}/repos/{repo_ref}/latest"
        try:
            async with httpx.AsyncClient(headers=self.headers, timeout=HTTP_TIMEOUT_SECONDS) as client:
                response = await client.get(url, params={"branch": self.branch})
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (401, 403):
                raise ConfigurationError(f"Source API rejected credentials for {repo_ref}") from e
            raise TransientInfraError(
                f"Source API returned HTTP {e.response.status_code} for {repo_ref}"
            ) from e
        except httpx.HTTPError as e:
            raise TransientInfraError(f"Source API unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise TransientInfraError(f"Source API returned a non-JSON body for {repo_ref}") from e
        if not isinstance(body, dict):
            raise TransientInfraError(
                f"Source API returned {type(body).__name__} instead of an object for {repo_ref}"
            )
        return body.get("latestCommitId") or None
