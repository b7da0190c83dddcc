"""
Server health checks for the LlamaEdge API server.

Three signals feed the health verdict of each poll cycle:
- TCP reachability of the server socket address
- The most recent ``response_status:`` entry in the server log
- An HTTP probe against the chat completions endpoint, sent only after the
  log has shown no responses for a while

All checks are non-fatal; failures become part of the cycle's record.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

import aiohttp

from .monitoring.models import LogMessage

logger = logging.getLogger(__name__)

# Marker of a vector store failure in API server error bodies
QDRANT_ERROR_MARKER = "Qdrant error:"


async def check_socket(host: str, port: int, timeout: float) -> tuple[bool, str | None]:
    """
    Check whether the server socket accepts TCP connections.

    Args:
        host: Server host
        port: Server port
        timeout: Connect timeout in seconds

    Returns:
        Tuple of (reachable, error description or None). Never raises.
    """
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except TimeoutError:
        return False, f"Server {host}:{port} unreachable: connect timed out after {timeout}s"
    except OSError as e:
        return False, f"Server {host}:{port} unreachable: {e}"

    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug(f"Error closing probe connection to {host}:{port}: {e}")

    return True, None


def latest_response_status(lines: Iterable[str]) -> str | None:
    """Return the status code of the newest ``response_status:`` log message."""
    for line in reversed(list(lines)):
        message = LogMessage.parse(line)
        if message is None:
            continue
        status = message.response_status
        if status is not None:
            logger.info(f"Found the latest response: status: {status}, timestamp: {message.timestamp}")
            return status
    return None


class ServerProber:
    """
    Talks to the LlamaEdge API server over HTTP.

    Uses aiohttp with a total request timeout. Methods never raise; network
    failures are logged and reported through their return values.
    """

    PROBE_ENDPOINT = "/v1/chat/completions"
    INFO_ENDPOINT = "/v1/info"
    PROBE_MODEL = "Phi-3-mini-4k-instruct"
    PROBE_CONTENT = "Who are you? <server-health>"

    def __init__(self, base_url: str, timeout: float = 30.0):
        """
        Initialize the prober.

        Args:
            base_url: Server base URL, e.g. ``http://127.0.0.1:8080``
            timeout: Total request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def probe(self) -> bool:
        """
        Send a small chat completion request and judge server health.

        Returns:
            False on network errors or a vector store error in the response
            body, True otherwise (including other non-success statuses).
        """
        payload = {
            "messages": [{"role": "user", "content": self.PROBE_CONTENT}],
            "model": self.PROBE_MODEL,
            "stream": False,
        }
        url = f"{self.base_url}{self.PROBE_ENDPOINT}"
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)

        logger.info("Ping API server")
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.post(url, json=payload) as response:
                    if response.status < 400:
                        logger.info("Received response from the API server")
                        return True

                    body = await response.text(errors="replace")
                    logger.warning(
                        f"The response returned by the API server is not successful "
                        f"(status {response.status}): {body[:200]}"
                    )
                    return QDRANT_ERROR_MARKER not in body

        except TimeoutError:
            logger.error(f"Probe request to {url} timed out")
            return False
        except aiohttp.ClientError as e:
            logger.error(f"Response error: {e}")
            return False

    async def fetch_info(self, system_prompt: str = "", rag_prompt: str = "") -> dict[str, Any] | None:
        """
        Retrieve server information and attach the static prompt context.

        The system prompt is inserted into ``extras``; for RAG servers the RAG
        prompt is added at the top level.

        Returns:
            Server information dict, or None if it could not be retrieved
        """
        url = f"{self.base_url}{self.INFO_ENDPOINT}"
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)

        logger.info(f"Retrieving server information from: {url}")
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.warning(f"Failed to get server info from API Server. Status: {response.status}")
                        return None
                    server_info = await response.json(content_type=None)

        except TimeoutError:
            logger.warning(f"Server info request to {url} timed out")
            return None
        except aiohttp.ClientError as e:
            logger.warning(f"Failed to retrieve server info: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Failed to parse the body of the server info response: {e}")
            return None

        if not isinstance(server_info, dict):
            logger.warning("Unexpected server info format")
            return None

        api_server = server_info.get("api_server")
        server_type = api_server.get("type") if isinstance(api_server, dict) else None
        logger.info(f"server type: {server_type}")

        if server_type == "rag":
            server_info["rag_prompt"] = rag_prompt

        extras = server_info.get("extras")
        if isinstance(extras, dict):
            extras["system_prompt"] = system_prompt

        return server_info


class HealthTracker:
    """
    Derives server health across poll cycles.

    Holds the last verdict and the time of the last observed response, so
    each monitor loop instance owns its own health state.
    """

    def __init__(
        self,
        prober: ServerProber | None,
        probe_idle_secs: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            prober: HTTP prober, or None to never probe
            probe_idle_secs: Seconds without responses before probing (0 disables)
            clock: Monotonic time source
        """
        self.prober = prober
        self.probe_idle_secs = probe_idle_secs
        self._clock = clock
        self._last_response_at = clock()
        self.healthy: bool | None = None

    @property
    def probing_enabled(self) -> bool:
        return self.prober is not None and self.probe_idle_secs > 0

    async def assess(self, reachable: bool, new_lines: list[str]) -> bool:
        """
        Update and return the health verdict for one cycle.

        Args:
            reachable: Result of this cycle's socket check
            new_lines: Log lines observed this cycle

        Returns:
            Current health verdict
        """
        now = self._clock()

        if not reachable:
            self._update(False)
            return False

        status = latest_response_status(new_lines)
        if status is not None:
            self._last_response_at = now
            self._update(status != "500")
            return self.healthy

        idle = now - self._last_response_at
        if self.probing_enabled and idle >= self.probe_idle_secs:
            logger.info(f"Time elapsed since last response: {idle:.0f} secs")
            self._last_response_at = now
            self._update(await self.prober.probe())
            return self.healthy

        if self.healthy is None:
            self._update(True)
        return self.healthy

    def _update(self, healthy: bool) -> None:
        if healthy != self.healthy:
            logger.info(f"Update server health to {str(healthy).lower()}")
        self.healthy = healthy
