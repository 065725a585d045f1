"""
Tests for the start-audit HTTP client.
"""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from audit_pulse.api import (
    AuditApiClient,
    AuditStartError,
    AuditType,
    StartAuditRequest,
)


def mock_async_client(mock_client_class, response=None, side_effect=None):
    mock_client = MagicMock()
    mock_client.post = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_class.return_value = mock_client
    return mock_client


class TestStartAuditRequest:
    """Tests for request construction."""

    def test_comprehensive_defaults(self):
        """Comprehensive audits default to 25 pages."""
        request = StartAuditRequest.for_url("  https://example.com ")
        assert request.url == "https://example.com"
        assert request.type == AuditType.COMPREHENSIVE
        assert request.title == "SEO Audit - https://example.com"
        assert request.config.max_pages == 25

    def test_standard_defaults(self):
        """Standard audits default to 10 pages."""
        request = StartAuditRequest.for_url("https://example.com", AuditType.STANDARD)
        assert request.config.max_pages == 10

    def test_wire_format_is_camel_case(self):
        """The request body uses camelCase keys."""
        wire = StartAuditRequest.for_url("https://example.com").to_wire()
        assert wire == {
            "url": "https://example.com",
            "type": "comprehensive",
            "title": "SEO Audit - https://example.com",
            "config": {
                "maxPages": 25,
                "includeSubdomains": False,
                "analyzeCompetitors": False,
            },
        }

    def test_parses_camel_case(self):
        """camelCase input is accepted."""
        request = StartAuditRequest.model_validate({
            "url": "https://example.com",
            "type": "standard",
            "config": {"maxPages": 5, "includeSubdomains": True},
        })
        assert request.config.max_pages == 5
        assert request.config.include_subdomains is True


class TestAuditApiClient:
    """Tests for AuditApiClient.start_audit."""

    @pytest.mark.asyncio
    async def test_successful_start(self):
        """Test a successful start call."""
        with patch('audit_pulse.api.httpx.AsyncClient') as mock_client_class:
            mock_client = mock_async_client(mock_client_class, httpx.Response(201, json={"jobId": "abc123"}))

            client = AuditApiClient("http://backend/", token="secret")
            job_id = await client.start_audit(StartAuditRequest.for_url("https://example.com"))

        assert job_id == "abc123"
        args, kwargs = mock_client.post.call_args
        assert args[0] == "http://backend/api/audit"
        assert kwargs["json"]["config"]["maxPages"] == 25
        assert kwargs["headers"]["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_numeric_audit_id(self):
        """Legacy backends answer with a numeric auditId."""
        with patch('audit_pulse.api.httpx.AsyncClient') as mock_client_class:
            mock_async_client(mock_client_class, httpx.Response(200, json={"success": True, "auditId": 17}))

            job_id = await AuditApiClient("http://backend").start_audit(
                StartAuditRequest.for_url("https://example.com")
            )

        assert job_id == "17"

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self):
        """No token means no Authorization header."""
        with patch('audit_pulse.api.httpx.AsyncClient') as mock_client_class:
            mock_client = mock_async_client(mock_client_class, httpx.Response(200, json={"jobId": "1"}))
            await AuditApiClient("http://backend").start_audit(StartAuditRequest.for_url("https://example.com"))

        assert "Authorization" not in mock_client.post.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_non_success_status_raises(self):
        """A non-2xx response raises with its status code."""
        with patch('audit_pulse.api.httpx.AsyncClient') as mock_client_class:
            mock_async_client(mock_client_class, httpx.Response(400, json={"error": "Invalid URL"}))

            with pytest.raises(AuditStartError, match="HTTP 400") as exc_info:
                await AuditApiClient("http://backend").start_audit(StartAuditRequest.for_url("bad"))

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        """A transport error is wrapped in AuditStartError."""
        with patch('audit_pulse.api.httpx.AsyncClient') as mock_client_class:
            mock_async_client(mock_client_class, side_effect=httpx.ConnectError("Connection refused"))

            with pytest.raises(AuditStartError, match="Connection refused"):
                await AuditApiClient("http://backend").start_audit(StartAuditRequest.for_url("https://x.io"))

    @pytest.mark.asyncio
    async def test_missing_job_id_raises(self):
        """A response without a job id is an error."""
        with patch('audit_pulse.api.httpx.AsyncClient') as mock_client_class:
            mock_async_client(mock_client_class, httpx.Response(200, json={"success": True}))

            with pytest.raises(AuditStartError, match="no job id"):
                await AuditApiClient("http://backend").start_audit(StartAuditRequest.for_url("https://x.io"))

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self):
        """A non-JSON body is an error."""
        with patch('audit_pulse.api.httpx.AsyncClient') as mock_client_class:
            mock_async_client(mock_client_class, httpx.Response(200, text="<html>"))

            with pytest.raises(AuditStartError, match="not JSON"):
                await AuditApiClient("http://backend").start_audit(StartAuditRequest.for_url("https://x.io"))
