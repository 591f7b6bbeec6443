"""
Build Executor
==============
Runs build and test commands inside an ephemeral Docker container and
returns structured execution results (logs, exit code, timing).

BOUNDARY RULES:
    - Executor ONLY observes execution.
    - Executor NEVER decides stage status; the stage action does that
      from the exit code.
    - Executor NEVER talks to the registry (see image_builder).

DOCKER STRATEGY:
    - One container per stage (ephemeral).
    - Workspace mounted as volume at /workspace.
    - Container destroyed after execution.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

import docker
from docker.errors import ContainerError, ImageNotFound, APIError, DockerException

from conductor.core.config import BUILD_IMAGE, EXECUTION_TIMEOUT_SECONDS
from conductor.core.constants import OUTPUT_EXCERPT_LINES

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """
    Structured output from a single containerised command.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure, -1 = infra error).
    full_log : str
        Full combined stdout + stderr from the container.
    log_excerpt : str
        First + last N lines for run summaries.
    execution_time_seconds : float
        Wall clock duration of the execution.
    environment_metadata : dict
        Runtime info: image used, container ID, timeout applied.
    error : str | None
        Infrastructure error (daemon unreachable, image missing), not build errors.
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    environment_metadata: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None


def create_log_excerpt(full_log: str,
                       head: int = OUTPUT_EXCERPT_LINES,
                       tail: int = OUTPUT_EXCERPT_LINES) -> str:
    """Abbreviate a log to its first and last lines."""
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


# Docker resource limits
_MEMORY_LIMIT = "4g"
_CPU_COUNT = 2


def run_in_container(
    workspace_path: str,
    command: str,
    docker_image: str = BUILD_IMAGE,
    timeout_seconds: int = EXECUTION_TIMEOUT_SECONDS,
    label: str = "stage",
) -> ExecutionResult:
    """
    Execute ``command`` inside an ephemeral container with the workspace mounted.

    Lifecycle:
        1. Create container with workspace mounted at /workspace
        2. Wait for exit (bounded by timeout)
        3. Capture logs, exit code, timing
        4. Destroy container

    Returns
    -------
    ExecutionResult
        Always returned. On infrastructure failure exit_code is -1 and error is set.
    """
    result = ExecutionResult()
    start_time = time.monotonic()
    container = None

    try:
        client = docker.from_env()

        logger.info(
            "Starting container | image=%s | stage=%s | timeout=%ds",
            docker_image, label, timeout_seconds,
        )

        container = client.containers.run(
            image=docker_image,
            command=["bash", "-c", command],
            volumes={workspace_path: {"bind": "/workspace", "mode": "rw"}},
            environment={"CI": "true"},
            working_dir="/workspace",
            mem_limit=_MEMORY_LIMIT,
            nano_cpus=_CPU_COUNT * 1_000_000_000,
            name=f"conductor-{label.lower().replace(' ', '-')}-{int(time.time() * 1000)}",
            labels={"project": "conductor", "role": "stage"},
            detach=True,
            stdout=True,
            stderr=True,
        )

        wait_result = container.wait(timeout=timeout_seconds)
        result.exit_code = wait_result.get("StatusCode", -1)

        log_bytes = container.logs(stdout=True, stderr=True)
        result.full_log = log_bytes.decode("utf-8", errors="replace")

        result.environment_metadata = {
            "image": docker_image,
            "container_id": container.short_id,
            "timeout_applied": timeout_seconds,
        }

    except ImageNotFound:
        result.error = f"Docker image '{docker_image}' not found"
        logger.error(result.error)

    except ContainerError as e:
        result.error = f"Container execution error: {e}"
        result.exit_code = getattr(e, "exit_status", -1)
        result.full_log = str(e)
        logger.error(result.error)

    except (APIError, DockerException) as e:
        result.error = f"Docker API error: {e}"
        logger.error(result.error)

    except Exception as e:
        # requests timeouts from container.wait land here
        result.error = f"Unexpected executor error: {type(e).__name__}: {e}"
        logger.exception(result.error)

    finally:
        if container is not None:
            try:
                container.remove(force=True)
                logger.info("Container %s destroyed", container.short_id)
            except Exception:
                logger.warning("Failed to remove container", exc_info=True)

    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    result.log_excerpt = create_log_excerpt(result.full_log)

    logger.info(
        "Execution complete | stage=%s | exit=%d | time=%.2fs",
        label, result.exit_code, result.execution_time_seconds,
    )
    return result
