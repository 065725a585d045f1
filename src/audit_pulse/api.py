"""
Start-audit HTTP client.

Issues the single remote call that launches an audit on the backend and
returns the job identifier the notification channel will use.
"""

import logging
from enum import Enum
from typing import Any, Optional

import httpx
from pydantic import Field

from audit_pulse.events import WireModel

logger = logging.getLogger(__name__)

START_AUDIT_PATH = "/api/audit"


class AuditStartError(Exception):
    """The backend refused or failed to start an audit."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuditType(str, Enum):
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class AuditOptions(WireModel):
    """The `config` block of a start request."""
    max_pages: int = Field(default=25, gt=0)
    include_subdomains: bool = False
    analyze_competitors: bool = False


class StartAuditRequest(WireModel):
    """Body of POST /api/audit."""
    url: str = Field(min_length=1)
    type: AuditType = AuditType.COMPREHENSIVE
    title: Optional[str] = None
    config: AuditOptions = Field(default_factory=AuditOptions)

    @classmethod
    def for_url(cls, url: str, audit_type: AuditType = AuditType.COMPREHENSIVE) -> "StartAuditRequest":
        """Build a request with the default options for the audit type."""
        url = url.strip()
        max_pages = 25 if audit_type == AuditType.COMPREHENSIVE else 10
        return cls(
            url=url,
            type=audit_type,
            title=f"SEO Audit - {url}",
            config=AuditOptions(max_pages=max_pages),
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AuditApiClient:
    """
    Client for the audit backend's start endpoint.

    Usage:
        client = AuditApiClient("http://localhost:3001", token="...")
        job_id = await client.start_audit(StartAuditRequest.for_url("https://example.com"))
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def start_audit(self, request: StartAuditRequest) -> str:
        """
        Start an audit.

        Args:
            request: Audit target and options

        Returns:
            The job identifier, as a string.

        Raises:
            AuditStartError: On a non-2xx response, a transport failure,
                or a response without a job id. Never retried.
        """
        url = f"{self.base_url}{START_AUDIT_PATH}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=request.to_wire(), headers=self._headers())
        except httpx.HTTPError as e:
            raise AuditStartError(f"Failed to start audit: {e}")

        if not response.is_success:
            raise AuditStartError(
                f"Failed to start audit: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            raise AuditStartError("Failed to start audit: response is not JSON", status_code=response.status_code)

        job_id = body.get("jobId") if isinstance(body, dict) else None
        if job_id is None and isinstance(body, dict):
            job_id = body.get("auditId")
        if job_id is None or job_id == "":
            raise AuditStartError("Failed to start audit: response has no job id", status_code=response.status_code)

        logger.info(f"Started {request.type.value} audit {job_id} for {request.url}")
        return str(job_id)
