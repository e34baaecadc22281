import asyncio
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sandcrawler_worker.runner import build_parser, load_environment, run_realtime


class TestRunnerArguments:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        monkeypatch.delenv("TRANSPORT", raising=False)

        args = build_parser().parse_args([])

        assert args.env == "prod"
        assert args.transport == "realtime"
        assert args.debug is False

    def test_http_transport(self):
        args = build_parser().parse_args(["--transport", "http", "--env", "dev", "--debug"])

        assert args.transport == "http"
        assert args.env == "dev"
        assert args.debug is True

    def test_unknown_transport_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--transport", "smoke-signals"])


class TestLoadEnvironment:
    def test_dev_prefers_development_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RUNNER_NAME", "unset")
        (tmp_path / ".env").write_text("RUNNER_NAME=prod-worker\n")
        (tmp_path / ".env.development").write_text("RUNNER_NAME=dev-worker\n")

        loaded = load_environment("dev", root=tmp_path)

        assert loaded == tmp_path / ".env.development"
        assert os.environ["RUNNER_NAME"] == "dev-worker"

    def test_dev_falls_back_to_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RUNNER_NAME", "unset")
        (tmp_path / ".env").write_text("RUNNER_NAME=prod-worker\n")

        loaded = load_environment("dev", root=tmp_path)

        assert loaded == tmp_path / ".env"
        assert os.environ["RUNNER_NAME"] == "prod-worker"

    def test_missing_files(self, tmp_path):
        assert load_environment("prod", root=tmp_path) is None


class TestRunRealtime:
    @staticmethod
    def config(**overrides):
        values = {
            "supabase_url": "https://test.supabase.co",
            "supabase_realtime_key": "test-key",
            "order_channel": "sandcrawler-orders",
            "default_timeout_ms": 5000,
            **overrides,
        }
        config = MagicMock(max_pages=1, default_page_settings={}, injection_bundles={})
        config.get.side_effect = values.get
        return config

    @pytest.mark.asyncio
    async def test_watches_connection_until_stopped(self):
        never = asyncio.Event()
        stop = asyncio.Event()
        stop.set()

        with patch("sandcrawler_worker.core.realtime_gateway.RealtimeGateway") as mock_gateway:
            gateway = mock_gateway.return_value
            gateway.connect = AsyncMock(return_value=True)
            gateway.receive_order = AsyncMock(side_effect=never.wait)
            gateway.broadcast_runner_status = AsyncMock()
            gateway.disconnect = AsyncMock()

            exit_code = await asyncio.wait_for(run_realtime(MagicMock(), self.config(), "runner-1", stop), timeout=2)

        assert exit_code == 0
        gateway.start_connection_watch.assert_called_once_with()
        gateway.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_connect_skips_watch(self):
        with patch("sandcrawler_worker.core.realtime_gateway.RealtimeGateway") as mock_gateway:
            gateway = mock_gateway.return_value
            gateway.connect = AsyncMock(return_value=False)

            exit_code = await run_realtime(MagicMock(), self.config(), "runner-1", asyncio.Event())

        assert exit_code == 1
        gateway.start_connection_watch.assert_not_called()
