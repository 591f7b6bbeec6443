"""
Manifest Patcher
================
Rewrites the image reference of a deployment manifest in the GitOps
repository and commits the change.

Flow:
    1. read file + base revision from the ManifestRepository
    2. locate the field structurally (conductor.parser.manifest_fields)
    3. splice in the new value, leaving every other byte untouched
    4. commit with a message embedding the new value
    5. on ConflictError: re-read and retry exactly once, then surface
"""
import logging

from conductor.core.constants import COMMIT_PREFIX
from conductor.core.exceptions import ConflictError
from conductor.models.artifact import ManifestPatch
from conductor.parser.manifest_fields import replace_field
from conductor.services.gitops_repository import ManifestRepository

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2


def with_image_tag(image: str, tag: str) -> str:
    """
    Replace only the tag portion of an image reference.

        with_image_tag("repo/app:41", "42")            -> "repo/app:42"
        with_image_tag("registry:5000/app", "42")      -> "registry:5000/app:42"
        with_image_tag("repo/app@sha256:ab..", "42")   -> "repo/app:42"
    """
    if not image:
        raise ValueError("image reference is empty")
    name = image.split("@", 1)[0]
    slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > slash:
        name = name[:colon]
    return f"{name}:{tag}"


class ManifestPatcher:

    def __init__(self, commit_prefix: str = COMMIT_PREFIX) -> None:
        self.commit_prefix = commit_prefix

    def commit_message(self, new_value: str) -> str:
        return f"{self.commit_prefix} {new_value}"

    def patch(
        self,
        repo: ManifestRepository,
        file_path: str,
        field_path: str,
        new_value: str,
    ) -> ManifestPatch:
        """
        Set ``field_path`` in ``file_path`` to ``new_value`` and commit.

        Returns
        -------
        ManifestPatch
            Old/new values and the resulting commit id.

        Raises
        ------
        ConflictError
            The repository moved under us twice in a row.
        ManifestFieldError
            The field does not exist or is not a plain scalar.
        """
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            snapshot = repo.read(file_path)
            updated, old_value = replace_field(snapshot.content, field_path, new_value)

            if old_value == new_value:
                logger.info("%s already at %s, nothing to commit", field_path, new_value)
                return ManifestPatch(
                    file_path=file_path,
                    field_path=field_path,
                    old_value=old_value,
                    new_value=new_value,
                    commit_id=snapshot.revision,
                )

            try:
                commit_id = repo.write(
                    file_path, updated, self.commit_message(new_value), snapshot.revision
                )
            except ConflictError as e:
                if attempt >= _MAX_ATTEMPTS:
                    logger.error("Manifest write conflicted again on %s, giving up", repo.ref)
                    raise
                logger.warning("Manifest write conflicted on %s, re-reading once: %s", repo.ref, e)
                continue

            logger.info(
                "Patched %s %s: %s -> %s (commit %s)",
                file_path, field_path, old_value, new_value, commit_id,
            )
            return ManifestPatch(
                file_path=file_path,
                field_path=field_path,
                old_value=old_value,
                new_value=new_value,
                commit_id=commit_id,
            )

        raise ConflictError(f"Manifest write on {repo.ref} did not complete")
