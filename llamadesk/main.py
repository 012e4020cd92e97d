"""
llamadesk - Application controller.

This module provides the AppController class that owns the startup
sequence (assets, server process, readiness), the chat client and
session relay, and the shutdown path. It also provides the command-line
entry point that serves the UI message channel.
"""

import os
import sys
import asyncio
import argparse
from pathlib import Path
from typing import Optional

from llamadesk.config import AppConfig
from llamadesk.assets.provisioner import AssetProvisioner, ConsentCallback
from llamadesk.inference.supervisor import ProcessSupervisor, ServerProcessHandle
from llamadesk.inference.readiness import ReadinessProber, ReadinessResult
from llamadesk.api.llama_client import LlamaChatClient
from llamadesk.session.relay import SessionRelay
from llamadesk.exceptions import (
    StartupError, ProcessSpawnFailed, ProcessUnresponsive
)
from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("llamadesk")

HEALTH_PATH = "/v1/models"


class AppController:
    """
    Owns the inference server lifecycle and the chat surface.

    Startup sequence:
    AssetProvisioner → ProcessSupervisor → ReadinessProber → LlamaChatClient

    Example:
        controller = AppController()
        await controller.startup()
        text = await controller.client.ask(controller.client.build_messages(
            [{"role": "user", "content": "Hello"}]
        ))
        await controller.shutdown()
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        mock_mode: Optional[bool] = None,
        consent: Optional[ConsentCallback] = None,
        provisioner: Optional[AssetProvisioner] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        prober: Optional[ReadinessProber] = None
    ):
        """
        Initialize the controller.

        Args:
            config: Application configuration
            mock_mode: Skip assets and the server process; answer with mock text
            consent: Async callback asked before any asset download
            provisioner: Asset provisioner override
            supervisor: Process supervisor override
            prober: Readiness prober override
        """
        self.config = config or AppConfig.from_env()
        self.mock_mode = mock_mode
        if self.mock_mode is None:
            self.mock_mode = os.getenv("LLM_TYPE", "LOCAL").upper() == "MOCK"

        self.provisioner = provisioner or AssetProvisioner(self.config.assets, consent)
        self.supervisor = supervisor or ProcessSupervisor()
        self.prober = prober or ReadinessProber(interval=self.config.server.poll_interval)
        self.relay = SessionRelay()
        self.client = LlamaChatClient(
            self.config.server.base_url,
            self.config.chat,
            relay=self.relay,
            mock_mode=self.mock_mode
        )
        self.handle: Optional[ServerProcessHandle] = None
        self._started = False

        logger.info(f"AppController created (mock_mode={self.mock_mode})")

    @property
    def server_state(self) -> str:
        if self.mock_mode:
            return "mock"
        if self.handle is None:
            return "not_started"
        return self.handle.state.value

    async def startup(self) -> str:
        """
        Run the startup sequence.

        Returns:
            str: Base URL of the ready llama-server

        Raises:
            StartupError: Any asset, spawn or readiness failure
        """
        if self._started:
            return self.config.server.base_url

        if self.mock_mode:
            logger.info("Mock mode - skipping assets and llama-server")
            self._started = True
            return self.config.server.base_url

        logger.info("Provisioning assets...")
        try:
            paths = await self.provisioner.ensure_all(self.provisioner.default_specs())
        finally:
            await self.provisioner.close()

        self.handle = await self.supervisor.start(
            paths["binary"], paths["model"], self.config.server
        )

        try:
            await self._wait_ready(self.handle)
        except StartupError:
            await self.supervisor.stop(self.handle, self.config.server.stop_timeout)
            raise

        if self.handle.exited.is_set():
            raise ProcessSpawnFailed(
                f"llama-server exited with code {self.handle.returncode} "
                f"as it became ready"
            )
        self.supervisor.mark_ready(self.handle)
        self.handle.on_exit(self._on_server_exit)
        self._started = True
        logger.info(f"llama-server ready at {self.handle.base_url}")
        return self.handle.base_url

    async def _wait_ready(self, handle: ServerProcessHandle) -> None:
        """Race the readiness probe against early process exit."""
        url = f"{handle.base_url}{HEALTH_PATH}"
        timeout_ms = self.config.server.ready_timeout_ms

        probe = asyncio.create_task(self.prober.wait_ready(url, timeout_ms))
        exited = asyncio.create_task(handle.exited.wait())
        try:
            done, _ = await asyncio.wait(
                {probe, exited}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (probe, exited):
                if not task.done():
                    task.cancel()

        if probe in done:
            result = probe.result()
            if result == ReadinessResult.OK:
                return
            raise ProcessUnresponsive(url, result.value, timeout_ms)

        raise ProcessSpawnFailed(
            f"llama-server exited with code {handle.returncode} before becoming ready"
        )

    def _on_server_exit(self, handle: ServerProcessHandle) -> None:
        if self._started:
            logger.error(
                f"llama-server (pid={handle.pid}) exited with code {handle.returncode}"
            )

    async def shutdown(self) -> None:
        """Shutdown and cleanup resources."""
        self._started = False
        await self.client.close()

        if self.handle is not None:
            await self.supervisor.stop(self.handle, self.config.server.stop_timeout)

        logger.info("AppController shutdown complete")

    def ui_entry_url(self) -> str:
        """URL the UI collaborator should load."""
        if self.config.channel.dev_server_url:
            return self.config.channel.dev_server_url
        return Path(self.config.channel.ui_index_path).resolve().as_uri()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a local llama-server and serve the chat channel"
    )
    parser.add_argument("--config", help="Path to YAML configuration file")
    parser.add_argument("--channel-port", type=int, help="Port for the UI channel")
    parser.add_argument(
        "--mock", action="store_true", help="Run without assets or llama-server"
    )
    return parser.parse_args(argv)


async def run(config: AppConfig, mock_mode: Optional[bool] = None) -> int:
    """Start everything, serve the channel until interrupted, then shut down."""
    import uvicorn
    from llamadesk.channel.routes import create_app

    controller = AppController(config, mock_mode=mock_mode)
    try:
        await controller.startup()
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        await controller.shutdown()
        return 1

    logger.info(f"UI entry: {controller.ui_entry_url()}")
    app = create_app(controller)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.channel.host,
        port=config.channel.port,
        log_level="info"
    ))
    await server.serve()
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    config = AppConfig.from_yaml(args.config) if args.config else AppConfig.from_env()
    if args.channel_port:
        config.channel.port = args.channel_port
    return asyncio.run(run(config, mock_mode=True if args.mock else None))


if __name__ == "__main__":
    sys.exit(main())
