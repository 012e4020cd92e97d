"""
Readiness prober for the llama-server HTTP API.
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx

from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("readiness_prober")


class ReadinessResult(str, Enum):
    """Outcome of a readiness wait."""
    OK = "ok"
    TIMED_OUT = "timed_out"  # server answered, but only with 5xx
    UNREACHABLE = "unreachable"  # no connection ever succeeded


class ReadinessProber:
    """
    Polls a URL until it answers with a status below 500.

    Example:
        prober = ReadinessProber()
        result = await prober.wait_ready("http://127.0.0.1:18777/v1/models", 20000)
    """

    def __init__(
        self,
        interval: float = 0.3,
        request_timeout: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.interval = interval
        self.request_timeout = request_timeout
        self._http_client = http_client

    async def wait_ready(self, url: str, timeout_ms: int) -> ReadinessResult:
        """
        Wait for the server behind ``url`` to accept requests.

        Args:
            url: Health endpoint to poll
            timeout_ms: Give up once this much time has elapsed

        Returns:
            ReadinessResult: OK, TIMED_OUT or UNREACHABLE
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = timeout_ms / 1000.0
        reachable = False
        attempts = 0

        client = self._http_client or httpx.AsyncClient(timeout=self.request_timeout)
        try:
            while True:
                attempts += 1
                try:
                    response = await client.get(url)
                    reachable = True
                    if response.status_code < 500:
                        logger.info(
                            f"Server ready at {url} after {attempts} attempt(s)"
                        )
                        return ReadinessResult.OK
                    logger.debug(f"Not ready yet: HTTP {response.status_code}")
                except httpx.TransportError as e:
                    logger.debug(f"Not reachable yet: {e.__class__.__name__}")

                if loop.time() - start > deadline:
                    result = (
                        ReadinessResult.TIMED_OUT if reachable
                        else ReadinessResult.UNREACHABLE
                    )
                    logger.warning(
                        f"Gave up on {url} after {attempts} attempt(s): {result.value}"
                    )
                    return result

                await asyncio.sleep(self.interval)
        finally:
            if self._http_client is None:
                await client.aclose()
