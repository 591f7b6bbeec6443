"""
Scanner Client
==============
Asks the vulnerability scanner for a verdict on a built image.

Contract:
    POST {SCANNER_API_URL}/scan {"imageRef": "..."}
    → {"severityCounts": {"CRITICAL": 0, "HIGH": 2, ...}, "passed": true}

Policy:
    A report with ``passed: false`` fails the stage. Independently of the
    scanner's own verdict, any finding at or above SCAN_SEVERITY_THRESHOLD
    also fails it.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from conductor.core.config import HTTP_TIMEOUT_SECONDS, SCAN_SEVERITY_THRESHOLD, SCANNER_API_TOKEN, SCANNER_API_URL
from conductor.core.exceptions import ConfigurationError
from conductor.utils.retry import with_retries

logger = logging.getLogger(__name__)

SEVERITY_ORDER = ["UNKNOWN", "LOW", "MEDIUM", "HIGH", "CRITICAL"]


@dataclass
class ScanReport:
    image_ref: str
    passed: bool
    severity_counts: Dict[str, int] = field(default_factory=dict)

    def blocking_findings(self, threshold: str = SCAN_SEVERITY_THRESHOLD) -> int:
        """Count findings at or above ``threshold``."""
        threshold = threshold.upper()
        if threshold not in SEVERITY_ORDER:
            return 0
        floor = SEVERITY_ORDER.index(threshold)
        return sum(
            count for severity, count in self.severity_counts.items()
            if severity.upper() in SEVERITY_ORDER and SEVERITY_ORDER.index(severity.upper()) >= floor
        )

    def is_acceptable(self, threshold: str = SCAN_SEVERITY_THRESHOLD) -> bool:
        return self.passed and self.blocking_findings(threshold) == 0

    def summary(self) -> str:
        counts = ", ".join(f"{k}={v}" for k, v in sorted(self.severity_counts.items()))
        return f"{self.image_ref}: passed={self.passed} [{counts}]"


class ScannerClient:

    def __init__(self, base_url: str = SCANNER_API_URL, token: Optional[str] = SCANNER_API_TOKEN) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Accept": "application/json", "User-Agent": "pipeline-conductor"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def scan(self, image_ref: str) -> ScanReport:
        if not self.base_url:
            raise ConfigurationError("SCANNER_API_URL is not configured")

        async def _post() -> httpx.Response:
            async with httpx.AsyncClient(headers=self.headers, timeout=HTTP_TIMEOUT_SECONDS) as client:
                response = await client.post(f"{self.base_url}/scan", json={"imageRef": image_ref})
                response.raise_for_status()
                return response

        response = await with_retries(_post, f"scan {image_ref}")
        data = response.json()
        report = ScanReport(
            image_ref=image_ref,
            passed=bool(data.get("passed", False)),
            severity_counts={str(k).upper(): int(v) for k, v in (data.get("severityCounts") or {}).items()},
        )
        logger.info("Scan result %s", report.summary())
        return report
