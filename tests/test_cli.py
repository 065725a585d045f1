"""Tests for the audit-pulse command line."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from audit_pulse.api import AuditStartError, AuditType
from audit_pulse.cli import build_parser, main, run_audit
from audit_pulse.config import Config, SimulationConfig


class TestParser:
    """Tests for argument parsing."""

    def test_run_defaults(self):
        """run defaults to a comprehensive audit."""
        args = build_parser().parse_args(["run", "https://example.com"])
        assert args.command == "run"
        assert args.url == "https://example.com"
        assert args.audit_type == "comprehensive"
        assert args.verbose is False

    def test_run_standard(self):
        """run accepts --type and -v."""
        args = build_parser().parse_args(["-v", "run", "https://example.com", "--type", "standard"])
        assert args.audit_type == "standard"
        assert args.verbose is True

    def test_hub_options(self):
        """hub accepts --port."""
        args = build_parser().parse_args(["hub", "--port", "4000"])
        assert args.command == "hub"
        assert args.port == 4000
        assert args.host is None

    def test_command_required(self):
        """A command is required."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    """Tests for main() dispatch."""

    def test_run_uses_config_file(self, tmp_path):
        """main loads --config and passes it to run_audit."""
        path = tmp_path / "config.yaml"
        path.write_text("simulation:\n  tick_interval: 0\n")

        with patch('audit_pulse.cli.run_audit', new=AsyncMock(return_value=0)) as mock_run:
            code = main(["--config", str(path), "run", "https://example.com", "--type", "standard"])

        assert code == 0
        url, audit_type, config = mock_run.await_args.args
        assert url == "https://example.com"
        assert audit_type == AuditType.STANDARD
        assert config.simulation.tick_interval == 0

    def test_hub_applies_overrides(self, tmp_path):
        """--host and --port override the hub config."""
        with patch('audit_pulse.hub.NotificationHub') as mock_hub_class:
            mock_hub_class.return_value = MagicMock()
            code = main(["--config", str(tmp_path / "missing.yaml"), "hub", "--host", "0.0.0.0", "--port", "4000"])

        assert code == 0
        hub_config = mock_hub_class.call_args.args[0]
        assert hub_config.host == "0.0.0.0"
        assert hub_config.port == 4000
        mock_hub_class.return_value.serve.assert_called_once()


class TestRunAudit:
    """Tests for the run command body."""

    @pytest.mark.asyncio
    async def test_offline_run_completes(self):
        """An offline run completes and exits 0."""
        config = Config(simulation=SimulationConfig(tick_interval=0))
        assert await run_audit("https://example.com", AuditType.COMPREHENSIVE, config) == 0

    @pytest.mark.asyncio
    async def test_start_failure_exits_nonzero(self):
        """A failed start exits 1."""
        config = Config()
        with patch('audit_pulse.session.JobSession._obtain_job_id', new=AsyncMock(side_effect=AuditStartError("HTTP 500"))):
            assert await run_audit("https://example.com", AuditType.STANDARD, config) == 1
