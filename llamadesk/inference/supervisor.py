"""
Process supervisor for the llama-server subprocess.

This module spawns llama-server with a fixed loopback-only argument set,
tracks its lifecycle state, observes its exit, and terminates it.
"""

import asyncio
from enum import Enum
from pathlib import Path
from typing import Optional, List, Callable

from llamadesk.config import ServerConfig
from llamadesk.exceptions import (
    ProcessSpawnFailed, SupervisorBusy, InvalidStateTransition
)
from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("process_supervisor")


class ServerState(str, Enum):
    """Lifecycle state of the server process."""
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


ALLOWED_TRANSITIONS = {
    ServerState.STARTING: (ServerState.READY, ServerState.FAILED),
    ServerState.READY: (ServerState.STOPPED,),
    ServerState.FAILED: (ServerState.STOPPED,),
    ServerState.STOPPED: (),
}


class ServerProcessHandle:
    """
    A running (or finished) llama-server process.

    ``exited`` is set once the process has exited, and ``returncode``
    then holds its exit status.
    """

    def __init__(self, process: asyncio.subprocess.Process, host: str, port: int):
        self.process = process
        self.pid = process.pid
        self.host = host
        self.port = port
        self.state = ServerState.STARTING
        self.history: List[ServerState] = [ServerState.STARTING]
        self.returncode: Optional[int] = None
        self.stopping = False
        self.exited = asyncio.Event()
        self._exit_callbacks: List[Callable[["ServerProcessHandle"], None]] = []
        self._watcher: Optional[asyncio.Task] = None

    @property
    def base_url(self) -> str:
        host = "[::1]" if self.host == "::1" else self.host
        return f"http://{host}:{self.port}"

    @property
    def is_alive(self) -> bool:
        return self.state in (ServerState.STARTING, ServerState.READY)

    def transition(self, target: ServerState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state.value, target.value)
        logger.info(f"llama-server pid={self.pid}: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def on_exit(self, callback: Callable[["ServerProcessHandle"], None]) -> None:
        """Register a callback run when the process exits."""
        self._exit_callbacks.append(callback)

    def _record_exit(self, returncode: int) -> None:
        self.returncode = returncode
        if self.state == ServerState.STARTING:
            self.transition(ServerState.FAILED)
        if self.state != ServerState.STOPPED:
            self.transition(ServerState.STOPPED)
        self.exited.set()
        for callback in self._exit_callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Exit callback failed")


class ProcessSupervisor:
    """
    Spawns and stops the llama-server subprocess.

    One supervisor owns at most one live server at a time.

    Example:
        supervisor = ProcessSupervisor()
        handle = await supervisor.start(binary, model, ServerConfig())
        ...
        await supervisor.stop(handle)
    """

    def __init__(self):
        self.handle: Optional[ServerProcessHandle] = None
        self._log_file = None

    @staticmethod
    def build_args(model_path: Path, config: ServerConfig) -> List[str]:
        """Compose the llama-server command-line arguments."""
        args = [
            "-m", str(model_path),
            "--port", str(config.port),
            "--host", config.host,
            "--ctx-size", str(config.ctx_size),
        ]
        if config.api_flag:
            args.append(config.api_flag)
        args.extend(config.extra_args)
        return args

    async def start(
        self,
        binary_path: Path,
        model_path: Path,
        config: ServerConfig
    ) -> ServerProcessHandle:
        """
        Spawn llama-server.

        Args:
            binary_path: Path to the llama-server executable
            model_path: Path to the GGUF model
            config: Server configuration

        Returns:
            ServerProcessHandle: Handle in STARTING state

        Raises:
            SupervisorBusy: This supervisor already owns a live server
            ProcessSpawnFailed: The executable could not be launched
        """
        if self.handle is not None and self.handle.is_alive:
            raise SupervisorBusy(self.handle.pid)

        args = self.build_args(model_path, config)
        logger.info(f"Starting llama-server: {binary_path} {' '.join(args)}")

        log_path = Path(config.log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self._close_log()
        self._log_file = open(log_path, "ab")

        try:
            process = await asyncio.create_subprocess_exec(
                str(binary_path),
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=self._log_file,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self._close_log()
            raise ProcessSpawnFailed(f"Could not launch {binary_path}: {e}") from e

        handle = ServerProcessHandle(process, config.host, config.port)
        handle._watcher = asyncio.create_task(self._watch(handle))
        self.handle = handle
        return handle

    def mark_ready(self, handle: ServerProcessHandle) -> None:
        handle.transition(ServerState.READY)

    def mark_failed(self, handle: ServerProcessHandle) -> None:
        if handle.state == ServerState.STARTING:
            handle.transition(ServerState.FAILED)

    async def _watch(self, handle: ServerProcessHandle) -> None:
        returncode = await handle.process.wait()
        if handle.state == ServerState.READY and not handle.stopping:
            logger.warning(f"llama-server exited unexpectedly (code {returncode})")
        else:
            logger.info(f"llama-server exited (code {returncode})")
        handle._record_exit(returncode)
        if handle is self.handle:
            self._close_log()

    async def stop(self, handle: ServerProcessHandle, timeout: float = 5.0) -> None:
        """
        Terminate the server. Safe to call on an already stopped handle.

        Args:
            handle: Handle returned by start()
            timeout: Seconds to wait after SIGTERM before killing
        """
        if handle.exited.is_set():
            return

        handle.stopping = True
        # Stopping before readiness counts as a failed start
        self.mark_failed(handle)

        if handle.process.returncode is None:
            try:
                handle.process.terminate()
                await asyncio.wait_for(handle.process.wait(), timeout=timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"llama-server pid={handle.pid} ignored SIGTERM, killing")
                handle.process.kill()
                await handle.process.wait()

        await handle.exited.wait()

    def _close_log(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
