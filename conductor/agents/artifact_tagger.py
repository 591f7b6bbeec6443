"""
Artifact Tagger
===============
Binds a CI run's build number to the image that run produced.

Rules:
    - The tag is the CI run id, i.e. the value handed out by the persisted
      BuildSequence when the run was created. Uniqueness needs no other
      coordination than that counter's own atomic increment.
    - Only CI runs whose log holds a successful ``package`` stage may be tagged.
    - Issued tags are recorded in the ``artifact_tags`` table. Tagging the same
      run again returns the original reference; a tag already held by another
      run is refused.
"""
import logging
import threading

from sqlalchemy import select

from conductor.core.exceptions import ArtifactTagError, ConfigurationError
from conductor.db.database import Database
from conductor.db.tables import ArtifactTag
from conductor.models.artifact import ArtifactReference
from conductor.models.pipeline_run import PipelineKind, PipelineRun
from conductor.models.stage_result import Capability

logger = logging.getLogger(__name__)


class ArtifactTagger:

    def __init__(self, database: Database, repository: str) -> None:
        self.database = database
        self.repository = repository
        self._lock = threading.Lock()

    def tag(self, run: PipelineRun, digest: str = "") -> ArtifactReference:
        if not self.repository:
            raise ConfigurationError("IMAGE_REPOSITORY is not configured")
        if run.kind != PipelineKind.CI:
            raise ArtifactTagError(f"Only CI runs produce artifacts, got {run.key}")
        if not run.stage_succeeded(Capability.PACKAGE):
            raise ArtifactTagError(
                f"Run {run.key} has not completed its package stage",
                {"run_id": run.run_id},
            )

        tag = str(run.run_id)
        with self._lock:
            with self.database.session() as db:
                with db.begin():
                    existing = db.execute(
                        select(ArtifactTag).where(ArtifactTag.run_id == run.run_id)
                    ).scalar_one_or_none()
                    if existing is not None:
                        logger.info("Run %s already tagged %s:%s", run.key, existing.repository, existing.tag)
                        return ArtifactReference(
                            repository=existing.repository, tag=existing.tag, digest=existing.digest
                        )

                    holder = db.execute(
                        select(ArtifactTag.run_id).where(
                            ArtifactTag.repository == self.repository, ArtifactTag.tag == tag
                        )
                    ).scalar_one_or_none()
                    if holder is not None:
                        raise ArtifactTagError(
                            f"Tag {self.repository}:{tag} already belongs to run {holder}",
                            {"run_id": run.run_id, "holder": holder},
                        )

                    db.add(ArtifactTag(run_id=run.run_id, repository=self.repository, tag=tag, digest=digest))

        reference = ArtifactReference(repository=self.repository, tag=tag, digest=digest)
        logger.info("Run %s tagged %s", run.key, reference.image_ref)
        return reference

    def lookup(self, run_id: int) -> ArtifactReference | None:
        with self.database.session() as db:
            row = db.execute(select(ArtifactTag).where(ArtifactTag.run_id == run_id)).scalar_one_or_none()
            if row is None:
                return None
            return ArtifactReference(repository=row.repository, tag=row.tag, digest=row.digest)
