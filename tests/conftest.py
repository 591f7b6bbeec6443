"""
Shared fixtures: a throwaway SQLite database per test and an in-memory
GitOps repository that can simulate concurrent pushes.
"""
import uuid

import pytest

from conductor.core.exceptions import ConflictError
from conductor.db.database import Database
from conductor.services.gitops_repository import ManifestRepository, ManifestSnapshot


class InMemoryManifestRepository(ManifestRepository):
    """
    Dict-backed ManifestRepository.

    ``conflicts`` is the number of upcoming writes that will find the branch
    moved: each one bumps the revision as if somebody else had pushed.
    """

    def __init__(self, files=None, conflicts=0):
        self.files = dict(files or {})
        self.revision = "rev-0"
        self.conflicts = conflicts
        self.commits = []
        self.reads = 0

    @property
    def ref(self):
        return "memory://gitops"

    def read(self, file_path):
        self.reads += 1
        return ManifestSnapshot(content=self.files[file_path], revision=self.revision)

    def write(self, file_path, content, message, base_revision):
        if self.conflicts > 0:
            self.conflicts -= 1
            self.revision = f"rev-foreign-{uuid.uuid4().hex[:6]}"
            raise ConflictError("branch moved", {"head": self.revision})
        if base_revision != self.revision:
            raise ConflictError("stale base revision")
        self.files[file_path] = content
        self.revision = f"rev-{len(self.commits) + 1}"
        self.commits.append((file_path, message, self.revision))
        return self.revision


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'conductor.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def memory_repo_factory():
    return InMemoryManifestRepository
