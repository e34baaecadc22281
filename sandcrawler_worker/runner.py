#!/usr/bin/env python3
"""
Sandcrawler Worker - Long-Running Scrape Worker

Receives scrape orders from an orchestrator, runs each one in its own browser
page and replies with the result.

Usage:
    python -m sandcrawler_worker.runner                     # Supabase Realtime transport, .env
    python -m sandcrawler_worker.runner --env dev           # Uses .env.development
    python -m sandcrawler_worker.runner --transport http    # HTTP ingress + callback URL

Environment Variables:
    RUNNER_NAME: Identifier for this worker (defaults to hostname)
    MAX_PAGES: Max pages open at once (default: 4)
    SUPABASE_URL / SUPABASE_REALTIME_KEY: Realtime transport connection
    CALLBACK_URL / CALLBACK_API_KEY: HTTP transport reply endpoint
    HTTP_HOST / HTTP_PORT: HTTP transport ingress bind address
    ENVIRONMENT: Set to 'dev' to use .env.development instead of .env
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import platform
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from sandcrawler_worker import __version__
from sandcrawler_worker.core.settings_manager import PROJECT_ROOT, SettingsManager, settings
from sandcrawler_worker.executor.browser_manager import BrowserManager
from sandcrawler_worker.executor.worker import ScrapeWorker
from sandcrawler_worker.utils.structured_logging import generate_trace_id, setup_structured_logging

logger = logging.getLogger("sandcrawler_worker.runner")

TRANSPORTS = ("realtime", "http")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sandcrawler scrape worker")
    parser.add_argument(
        "--env",
        choices=["dev", "prod"],
        default=os.environ.get("ENVIRONMENT", "prod"),
        help="Environment to run in. Defaults to ENVIRONMENT env var or 'prod'",
    )
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=os.environ.get("TRANSPORT", "realtime"),
        help="How orders arrive and replies leave (default: realtime)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def load_environment(env: str, root: Path = PROJECT_ROOT) -> Path | None:
    """Load .env (or .env.development for dev) into the process environment."""
    if env == "dev":
        env_file = root / ".env.development"
        if not env_file.exists():
            print(f"Warning: {env_file} not found, falling back to .env")
            env_file = root / ".env"
    else:
        env_file = root / ".env"

    if env_file.exists():
        load_dotenv(env_file, override=True)
        return env_file
    return None


def build_worker(gateway, browser: BrowserManager, config: SettingsManager, runner_name: str) -> ScrapeWorker:
    return ScrapeWorker(
        gateway,
        browser.new_page,
        max_pages=config.max_pages,
        default_settings=config.default_page_settings,
        bundles=config.injection_bundles,
        default_timeout_ms=int(config.get("default_timeout_ms")),
        runner_name=runner_name,
    )


async def run_realtime(browser: BrowserManager, config: SettingsManager, runner_name: str, stop: asyncio.Event) -> int:
    from sandcrawler_worker.core.realtime_gateway import RealtimeGateway

    supabase_url = config.get("supabase_url")
    realtime_key = config.get("supabase_realtime_key")
    if not supabase_url or not realtime_key:
        logger.error("[Runner] SUPABASE_URL and SUPABASE_REALTIME_KEY are required for the realtime transport")
        return 1

    gateway = RealtimeGateway(supabase_url, realtime_key, runner_name, channel_name=config.get("order_channel"))
    if not await gateway.connect():
        logger.error("[Runner] Failed to connect to Supabase Realtime", extra={"runner_name": runner_name})
        return 1
    gateway.start_connection_watch()

    worker = build_worker(gateway, browser, config, runner_name)
    stop_watcher = asyncio.create_task(_stop_on(stop, worker))
    await gateway.broadcast_runner_status("starting", {"max_pages": worker.max_pages, "version": __version__})

    try:
        return await worker.run()
    finally:
        stop_watcher.cancel()
        await gateway.broadcast_runner_status("stopping", {"orders_handled": worker.orders_handled})
        await gateway.disconnect()


async def run_http(browser: BrowserManager, config: SettingsManager, runner_name: str, stop: asyncio.Event) -> int:
    import uvicorn

    from sandcrawler_worker.api.server import create_app
    from sandcrawler_worker.core.http_gateway import HttpGateway

    gateway = HttpGateway(config.get("callback_url"), api_key=config.get("callback_api_key") or None)
    worker = build_worker(gateway, browser, config, runner_name)

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(gateway, worker),
            host=config.get("http_host"),
            port=int(config.get("http_port")),
            log_config=None,
        )
    )
    serve_task = asyncio.create_task(server.serve())
    # uvicorn exits on SIGINT/SIGTERM itself; the worker follows it
    serve_task.add_done_callback(lambda _: worker.stop())
    stop_watcher = asyncio.create_task(_stop_on(stop, worker))
    try:
        return await worker.run()
    finally:
        stop_watcher.cancel()
        server.should_exit = True
        await serve_task
        await gateway.aclose()


async def _stop_on(stop: asyncio.Event, worker: ScrapeWorker) -> None:
    await stop.wait()
    worker.stop()


async def main_async(args: argparse.Namespace) -> int:
    settings.reload()
    runner_name = settings.get("runner_name")
    if runner_name == SettingsManager.DEFAULTS["runner_name"]:
        runner_name = platform.node() or runner_name

    logger.info("=" * 60)
    logger.info(f"Sandcrawler Worker Starting (v{__version__})")
    logger.info("=" * 60)
    logger.info(f"Environment: {args.env.upper()}")
    logger.info(f"Runner Name: {runner_name}")
    logger.info(f"Transport: {args.transport}")
    logger.info(f"Max Pages: {settings.max_pages}")
    logger.info(f"Platform: {platform.system()} {platform.release()}")
    logger.info("=" * 60)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig, stop)
        except NotImplementedError:
            # Not available on Windows event loops
            pass

    browser = BrowserManager(headless=bool(settings.get("headless")))
    await browser.initialize()

    trace_id = generate_trace_id()
    logger.info("[Runner] Entering order loop", extra={"runner_name": runner_name, "trace_id": trace_id})
    try:
        if args.transport == "http":
            exit_code = await run_http(browser, settings, runner_name, stop)
        else:
            exit_code = await run_realtime(browser, settings, runner_name, stop)
    finally:
        await browser.quit()

    logger.info(f"Worker shutting down with exit code {exit_code}", extra={"runner_name": runner_name, "trace_id": trace_id})
    return exit_code


def _request_shutdown(sig: signal.Signals, stop: asyncio.Event) -> None:
    logger.info(f"Received {sig.name}, initiating graceful shutdown...")
    stop.set()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    load_environment(args.env)
    setup_structured_logging(debug=args.debug)

    try:
        exit_code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
