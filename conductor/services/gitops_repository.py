"""
GitOps Repository
=================
Read/write access to the version-controlled store of deployment manifests.

Optimistic concurrency:
    ``read`` returns the file together with the revision it was read at.
    ``write`` is given that base revision back and refuses with ConflictError
    when the tracked branch has moved since, or when the push is rejected
    because somebody pushed in between. The caller decides whether to re-read
    and retry; this layer never rebases on its own.

The sync agent that applies the manifest to the cluster watches the branch;
a successful push is the whole hand-off.
"""
import os
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from conductor.core.config import GITOPS_BRANCH, GITOPS_REPO_URL, GITOPS_TOKEN, WORKSPACE_ROOT
from conductor.core.exceptions import ConfigurationError, ConflictError, TransientInfraError
from conductor.services.repo_service import authenticated_url, get_repo_name

logger = logging.getLogger(__name__)

_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "failed to push some refs")


@dataclass
class ManifestSnapshot:
    content: str
    revision: str


class ManifestRepository(ABC):
    """Storage seam used by the Manifest Patcher."""

    @property
    @abstractmethod
    def ref(self) -> str:
        """Human readable repository reference for logs and run params."""

    @abstractmethod
    def read(self, file_path: str) -> ManifestSnapshot:
        ...

    @abstractmethod
    def write(self, file_path: str, content: str, message: str, base_revision: str) -> str:
        """Commit ``content`` on top of ``base_revision``; return the new commit id."""


class GitManifestRepository(ManifestRepository):
    """
    Git-backed manifest store using a persistent local clone.

    A lock serialises local clone access between runs of this process;
    cross-process races are caught by the revision check and the push.
    """

    def __init__(
        self,
        repo_url: str = GITOPS_REPO_URL,
        branch: str = GITOPS_BRANCH,
        token: Optional[str] = GITOPS_TOKEN,
        workspace_root: str = WORKSPACE_ROOT,
        author_name: str = "pipeline-conductor",
        author_email: str = "conductor@localhost",
    ) -> None:
        if not repo_url:
            raise ConfigurationError("GITOPS_REPO_URL is not configured")
        self.repo_url = repo_url
        self.branch = branch
        self.token = token
        self.clone_path = os.path.abspath(
            os.path.join(workspace_root, f"gitops-{get_repo_name(repo_url)}")
        )
        self.author_name = author_name
        self.author_email = author_email
        self._lock = threading.Lock()

    @property
    def ref(self) -> str:
        return f"{self.repo_url}#{self.branch}"

    # -------------------------------------------------------------------
    # git plumbing
    # -------------------------------------------------------------------
    def _git(self, *args: str, cwd: Optional[str] = None) -> str:
        res = subprocess.run(
            ["git", *args],
            cwd=cwd or self.clone_path,
            check=True,
            capture_output=True,
            text=True,
        )
        return res.stdout.strip()

    def _sync(self) -> str:
        """Make sure the clone exists and matches origin; return origin head."""
        try:
            if not os.path.isdir(os.path.join(self.clone_path, ".git")):
                os.makedirs(os.path.dirname(self.clone_path), exist_ok=True)
                logger.info("Cloning GitOps repository into %s", self.clone_path)
                self._git(
                    "clone", "--branch", self.branch,
                    authenticated_url(self.repo_url, self.token), self.clone_path,
                    cwd=os.path.dirname(self.clone_path),
                )
                self._git("config", "user.name", self.author_name)
                self._git("config", "user.email", self.author_email)
            self._git("fetch", "origin", self.branch)
            return self._git("rev-parse", f"origin/{self.branch}")
        except subprocess.CalledProcessError as e:
            raise TransientInfraError(f"GitOps repository sync failed: {e.stderr.strip()}") from e

    # -------------------------------------------------------------------
    # ManifestRepository
    # -------------------------------------------------------------------
    def read(self, file_path: str) -> ManifestSnapshot:
        with self._lock:
            head = self._sync()
            try:
                self._git("checkout", "--force", "-B", self.branch, f"origin/{self.branch}")
            except subprocess.CalledProcessError as e:
                raise TransientInfraError(f"GitOps checkout failed: {e.stderr.strip()}") from e

            abs_path = self._resolve(file_path)
            if not os.path.isfile(abs_path):
                raise ConfigurationError(f"Manifest {file_path} does not exist in {self.ref}")
            with open(abs_path, "r", encoding="utf-8") as f:
                content = f.read()

        logger.info("Read %s at %s", file_path, head[:12])
        return ManifestSnapshot(content=content, revision=head)

    def write(self, file_path: str, content: str, message: str, base_revision: str) -> str:
        with self._lock:
            head = self._sync()
            if head != base_revision:
                raise ConflictError(
                    f"{self.ref} moved since read",
                    {"base": base_revision, "head": head},
                )

            abs_path = self._resolve(file_path)
            with open(abs_path, "w", encoding="utf-8") as f:
                f.write(content)

            try:
                self._git("add", file_path)
                diff_check = subprocess.run(
                    ["git", "diff", "--cached", "--quiet"],
                    cwd=self.clone_path,
                    capture_output=True,
                    text=True,
                )
                if diff_check.returncode == 0:
                    logger.warning("Manifest %s unchanged, nothing to commit", file_path)
                    return base_revision

                self._git("commit", "-m", message)
                commit_id = self._git("rev-parse", "HEAD")
            except subprocess.CalledProcessError as e:
                raise TransientInfraError(f"GitOps commit failed: {e.stderr.strip()}") from e

            try:
                self._git("push", "origin", f"HEAD:{self.branch}")
            except subprocess.CalledProcessError as e:
                # Drop the local commit; the next read resets onto origin anyway
                subprocess.run(
                    ["git", "reset", "--hard", f"origin/{self.branch}"],
                    cwd=self.clone_path, capture_output=True, text=True,
                )
                stderr = (e.stderr or "").lower()
                if any(marker in stderr for marker in _REJECTED_MARKERS):
                    raise ConflictError(f"Push to {self.ref} rejected", {"stderr": e.stderr.strip()}) from e
                raise TransientInfraError(f"Push to {self.ref} failed: {e.stderr.strip()}") from e

        logger.info("Pushed %s to %s (%s)", file_path, self.ref, commit_id[:12])
        return commit_id

    def _resolve(self, file_path: str) -> str:
        abs_path = os.path.normpath(os.path.join(self.clone_path, file_path))
        if not abs_path.startswith(self.clone_path + os.sep):
            raise ConfigurationError(f"Manifest path escapes repository: {file_path}")
        return abs_path
