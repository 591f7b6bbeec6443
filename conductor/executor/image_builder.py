"""
Image Builder
=============
Builds the application image from the checked-out workspace and publishes it
to the registry through the local Docker daemon.

Publish acknowledgement:
    ``docker push`` streams JSON progress lines. The push is acknowledged
    only when the stream ends without an ``error`` entry; the registry digest
    is read from the final ``aux.Digest`` line.
"""
import logging
from dataclasses import dataclass

import docker
from docker.errors import APIError, BuildError, DockerException

from conductor.core.exceptions import ConfigurationError, StageFailedError, TransientInfraError

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("unauthorized", "denied", "authentication required")


@dataclass
class BuiltImage:
    image_id: str
    local_ref: str
    build_log: str = ""


def build_image(workspace_path: str, repository: str, run_id: int) -> BuiltImage:
    """Build the workspace Dockerfile into ``<repository>:build-<run_id>``."""
    if not repository:
        raise ConfigurationError("IMAGE_REPOSITORY is not configured")

    local_ref = f"{repository}:build-{run_id}"
    try:
        client = docker.from_env()
        image, log_stream = client.images.build(path=workspace_path, tag=local_ref, rm=True)
    except BuildError as e:
        log = "".join(chunk.get("stream", "") for chunk in e.build_log if isinstance(chunk, dict))
        raise StageFailedError(f"Image build failed: {e.msg}", {"log_tail": log[-2000:]}) from e
    except (APIError, DockerException) as e:
        raise TransientInfraError(f"Docker daemon error during build: {e}") from e

    build_log = "".join(chunk.get("stream", "") for chunk in log_stream if isinstance(chunk, dict))
    logger.info("Built image %s (%s)", local_ref, image.id)
    return BuiltImage(image_id=image.id, local_ref=local_ref, build_log=build_log)


def push_image(image_id: str, repository: str, tag: str) -> str:
    """
    Tag ``image_id`` as ``repository:tag`` and push it.

    Returns
    -------
    str
        Registry digest (``sha256:...``), or the local image id when the
        registry did not report one.
    """
    try:
        client = docker.from_env()
        image = client.images.get(image_id)
        image.tag(repository, tag=tag)
        stream = client.images.push(repository, tag=tag, stream=True, decode=True)
        digest = ""
        for line in stream:
            if "error" in line:
                message = str(line.get("error"))
                if any(marker in message.lower() for marker in _AUTH_MARKERS):
                    raise ConfigurationError(f"Registry rejected credentials: {message}")
                raise TransientInfraError(f"Registry push failed: {message}")
            aux = line.get("aux") or {}
            if aux.get("Digest"):
                digest = aux["Digest"]
    except (APIError, DockerException) as e:
        raise TransientInfraError(f"Docker daemon error during push: {e}") from e

    logger.info("Pushed %s:%s digest=%s", repository, tag, digest or "<none>")
    return digest or image_id


def remove_image(image_ref: str) -> None:
    try:
        docker.from_env().images.remove(image_ref, force=True)
        logger.info("Removed local image %s", image_ref)
    except DockerException as e:
        logger.warning("Could not remove local image %s: %s", image_ref, e)
