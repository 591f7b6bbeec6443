"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    DATABASE_URL                  — SQLAlchemy URL for the build sequence store (default: sqlite:///./conductor.db)
    SOURCE_REPO_URL               — Application repository watched for changes
    SOURCE_BRANCH                 — Branch to build (default: main)
    SOURCE_REPO_REF               — Repository reference understood by the source API (e.g. org/app)
    SOURCE_API_URL                — Source hosting API used by the poll watcher
    ANALYSIS_API_URL              — Static-analysis service receiving analysis submissions
    SCANNER_API_URL               — Vulnerability scanner endpoint
    IMAGE_REPOSITORY              — Registry coordinate for the built image (e.g. repo/app)
    GITOPS_REPO_URL               — GitOps repository holding the deployment manifest
    GITOPS_BRANCH                 — Branch tracked by the sync agent (default: main)
    MANIFEST_PATH                 — Manifest file inside the GitOps repository
    MANIFEST_FIELD_PATH           — Structural path of the image reference field
    DOWNSTREAM_TRIGGER_URL        — Remote CD trigger endpoint (empty = in-process CD)
    NOTIFY_WEBHOOK_URLS           — Comma separated notification channel endpoints
    ENABLE_POLLING                — Start the poll watcher on app startup (default: false)

Timing Philosophy:
    Poll cadence, gate timeout, gate re-check interval and retry counts are
    deployment decisions. None of the defaults below is a requirement; every
    one of them is overridable from the environment.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# Persistence
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./conductor.db")

# Trigger watcher
SOURCE_REPO_URL = os.getenv("SOURCE_REPO_URL", "")
SOURCE_BRANCH = os.getenv("SOURCE_BRANCH", "main")
SOURCE_REPO_REF = os.getenv("SOURCE_REPO_REF", "")
SOURCE_API_URL = os.getenv("SOURCE_API_URL", "")
SOURCE_API_TOKEN = os.getenv("SOURCE_API_TOKEN")
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", 60))
ENABLE_POLLING = os.getenv("ENABLE_POLLING", "false").lower() == "true"

# Quality gate
ANALYSIS_API_URL = os.getenv("ANALYSIS_API_URL", "")
ANALYSIS_API_TOKEN = os.getenv("ANALYSIS_API_TOKEN")
ANALYSIS_PROJECT_KEY = os.getenv("ANALYSIS_PROJECT_KEY", "app")
QUALITY_GATE_TIMEOUT_SECONDS = float(os.getenv("QUALITY_GATE_TIMEOUT_SECONDS", 300))
GATE_RECHECK_SECONDS = float(os.getenv("GATE_RECHECK_SECONDS", 5))

# Build sandbox
BUILD_IMAGE = os.getenv("BUILD_IMAGE", "maven:3.9-eclipse-temurin-17")
BUILD_COMMAND = os.getenv("BUILD_COMMAND", "mvn -B -DskipTests package")
TEST_COMMAND = os.getenv("TEST_COMMAND", "mvn -B test")
EXECUTION_TIMEOUT_SECONDS = int(os.getenv("EXECUTION_TIMEOUT_SECONDS", 900))
WORKSPACE_ROOT = os.getenv(
    "WORKSPACE_ROOT",
    os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "workspace"),
)

# Image, registry and scanner
IMAGE_REPOSITORY = os.getenv("IMAGE_REPOSITORY", "")
SCANNER_API_URL = os.getenv("SCANNER_API_URL", "")
SCANNER_API_TOKEN = os.getenv("SCANNER_API_TOKEN")
SCAN_SEVERITY_THRESHOLD = os.getenv("SCAN_SEVERITY_THRESHOLD", "CRITICAL")

# CD side
DOWNSTREAM_PIPELINE_ID = os.getenv("DOWNSTREAM_PIPELINE_ID", "cd")
DOWNSTREAM_TRIGGER_URL = os.getenv("DOWNSTREAM_TRIGGER_URL", "")
DOWNSTREAM_TRIGGER_TOKEN = os.getenv("DOWNSTREAM_TRIGGER_TOKEN")
GITOPS_REPO_URL = os.getenv("GITOPS_REPO_URL", "")
GITOPS_BRANCH = os.getenv("GITOPS_BRANCH", "main")
GITOPS_TOKEN = os.getenv("GITOPS_TOKEN")
MANIFEST_PATH = os.getenv("MANIFEST_PATH", "deployment.yml")
MANIFEST_FIELD_PATH = os.getenv("MANIFEST_FIELD_PATH", "spec.template.spec.containers[0].image")

# Notification
NOTIFY_WEBHOOK_URLS: list[str] = _csv(os.getenv("NOTIFY_WEBHOOK_URLS", ""))
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", 10))

# Retry policy for transient infrastructure errors
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", 3))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", 2))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", 20))

# Run reports
RESULTS_DIR = os.getenv("RESULTS_DIR", "results")
