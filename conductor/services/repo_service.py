"""
Repo Service
============
Manages per-run source checkouts on the host machine.

Philosophy:
    - One workspace per CI run: WORKSPACE_ROOT/<repo-name>-<run_id>/
    - Checkout is pinned to the triggering commit, never to a moving branch.
    - The workspace is removed by the cleanup stage.
"""
import os
import shutil
import subprocess
import logging
from typing import Optional

from conductor.core.config import WORKSPACE_ROOT
from conductor.core.exceptions import ConfigurationError, TransientInfraError

logger = logging.getLogger(__name__)


def get_repo_name(repo_url: str) -> str:
    """Extract repository name from URL."""
    name = repo_url.rstrip("/").split("/")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Insert a token into an https URL for private repositories."""
    if token and repo_url.startswith("https://"):
        return repo_url.replace("https://", f"https://x-access-token:{token}@", 1)
    return repo_url


def _git(args: list[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )


def checkout_commit(
    repo_url: str,
    commit_id: str,
    run_id: int,
    token: Optional[str] = None,
    workspace_root: str = WORKSPACE_ROOT,
) -> str:
    """
    Clone ``repo_url`` and check out ``commit_id`` in a fresh run workspace.

    Returns
    -------
    str
        Absolute path to the workspace.
    """
    if not repo_url:
        raise ConfigurationError("SOURCE_REPO_URL is not configured")

    os.makedirs(workspace_root, exist_ok=True)
    dest_path = os.path.abspath(
        os.path.join(workspace_root, f"{get_repo_name(repo_url)}-{run_id}")
    )
    if os.path.exists(dest_path):
        shutil.rmtree(dest_path)

    logger.info("Cloning %s @ %s into %s", repo_url, commit_id, dest_path)
    try:
        _git(["clone", "--no-checkout", authenticated_url(repo_url, token), dest_path])
        _git(["checkout", "--detach", commit_id], cwd=dest_path)
    except subprocess.CalledProcessError as e:
        # Clone/fetch failures are network-bound far more often than not
        raise TransientInfraError(f"Checkout of {commit_id} failed: {e.stderr.strip()}") from e

    logger.info("Checked out %s at %s", commit_id, dest_path)
    return dest_path


def clean_workspace(workspace_path: str) -> None:
    """Remove a run workspace. Missing paths are ignored."""
    if workspace_path and os.path.exists(workspace_path):
        logger.info("Cleaning workspace: %s", workspace_path)
        shutil.rmtree(workspace_path)
