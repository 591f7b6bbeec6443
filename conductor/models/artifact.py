"""
Artifact Models
===============
ArtifactReference binds a built image to the CI run that produced it.
ManifestPatch records the single manifest change a CD run made.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ArtifactReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    digest: str = ""

    @property
    def image_ref(self) -> str:
        return f"{self.repository}:{self.tag}"


class ManifestPatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_path: str
    field_path: str
    old_value: str
    new_value: str
    commit_id: Optional[str] = None
