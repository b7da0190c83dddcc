"""Configuration for the LlamaEdge server assistant.

Options come from the command line, with an optional YAML file supplying
defaults. Everything is validated once at startup into an immutable
``AssistantConfig``; any problem surfaces as a ``ConfigError``.
"""

from __future__ import annotations

import ipaddress
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SERVER_SOCKET_ADDRESS = "0.0.0.0:8080"
DEFAULT_INTERVAL = 10.0
DEFAULT_OUTPUT_LOG = "assistant.log"
DEFAULT_SOCKET_TIMEOUT = 2.0
DEFAULT_PROBE_IDLE_SECS = 30.0
DEFAULT_LOG_LEVEL = "INFO"

LOG_LEVEL_ENV = "ASSISTANT_LOG_LEVEL"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def parse_socket_addr(addr: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises:
        ConfigError: If the address is malformed or the port is out of range.
    """
    text = addr.strip()
    if text.startswith("["):
        host, sep, port_text = text[1:].partition("]:")
        if not sep:
            raise ConfigError(f"Failed to parse socket address: {addr}")
        try:
            ipaddress.IPv6Address(host)
        except ValueError as e:
            raise ConfigError(f"Failed to parse socket address: {addr}") from e
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep or not host or ":" in host:
            raise ConfigError(f"Failed to parse socket address: {addr}")

    try:
        port = int(port_text)
    except ValueError as e:
        raise ConfigError(f"Failed to parse socket address: {addr}") from e
    if not 0 < port < 65536:
        raise ConfigError(f"Failed to parse socket address: {addr} (port out of range)")

    return host, port


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load option defaults from a YAML file.

    Keys may use dashes or underscores (``server-log-file`` or
    ``server_log_file``); they are normalized to underscores.

    Raises:
        ConfigError: If the file is missing, unreadable or not a YAML mapping.
    """
    config_path = Path(path)

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {config_path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration YAML {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")

    logger.debug(f"Loaded configuration defaults from {config_path}")
    return {str(key).replace("-", "_"): value for key, value in data.items()}


@dataclass(frozen=True)
class AssistantConfig:
    """Resolved assistant options.

    Attributes:
        server_host: Host part of the API server socket address.
        server_port: Port part of the API server socket address.
        server_log_file: Path to the API server log being tailed.
        gaianet_dir: Base gaianet directory of the node.
        interval: Seconds between poll cycles.
        output_log: Append-only notification log written by the assistant.
        system_prompt: Static system prompt included in every record.
        rag_prompt: Static RAG prompt included in every record.
        socket_timeout: Connect timeout for the reachability check.
        probe_idle_secs: Idle time before an HTTP probe is sent (0 disables).
        state_file: Cursor state file; None keeps the cursor in memory only.
        log_level: Diagnostic log level.
        diagnostic_log: Optional JSON diagnostic log file.
    """

    server_host: str
    server_port: int
    server_log_file: Path
    gaianet_dir: Path
    interval: float = DEFAULT_INTERVAL
    output_log: Path = Path(DEFAULT_OUTPUT_LOG)
    system_prompt: str = ""
    rag_prompt: str = ""
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT
    probe_idle_secs: float = DEFAULT_PROBE_IDLE_SECS
    state_file: Path | None = None
    log_level: str = DEFAULT_LOG_LEVEL
    diagnostic_log: Path | None = None

    @property
    def server_socket_addr(self) -> str:
        if ":" in self.server_host:
            return f"[{self.server_host}]:{self.server_port}"
        return f"{self.server_host}:{self.server_port}"

    @property
    def server_url(self) -> str:
        return f"http://{self.server_socket_addr}"

    @property
    def effective_socket_timeout(self) -> float:
        """Socket timeout capped at the poll interval."""
        return min(self.socket_timeout, self.interval)

    @classmethod
    def from_options(
        cls,
        *,
        server_log_file: str | Path | None,
        gaianet_dir: str | Path | None,
        server_socket_addr: str = DEFAULT_SERVER_SOCKET_ADDRESS,
        interval: float | int | str = DEFAULT_INTERVAL,
        output_log: str | Path = DEFAULT_OUTPUT_LOG,
        system_prompt: str | None = None,
        rag_prompt: str | None = None,
        socket_timeout: float | int | str = DEFAULT_SOCKET_TIMEOUT,
        probe_idle_secs: float | int | str = DEFAULT_PROBE_IDLE_SECS,
        state_file: str | Path | None = None,
        log_level: str | None = None,
        diagnostic_log: str | Path | None = None,
    ) -> AssistantConfig:
        """Validate raw option values and build the configuration.

        Raises:
            ConfigError: On a missing required path, a non-positive interval,
                a malformed socket address or an unknown log level.
        """
        if not server_log_file:
            raise ConfigError("Missing required option: --server-log-file")
        if not gaianet_dir:
            raise ConfigError("Missing required option: --gaianet-dir")

        log_path = Path(server_log_file)
        if not log_path.is_file():
            raise ConfigError(f"Invalid log file path: {log_path}")

        gaianet_path = Path(gaianet_dir)
        if not gaianet_path.is_dir():
            raise ConfigError(f"Invalid gaianet directory: {gaianet_path}")

        host, port = parse_socket_addr(str(server_socket_addr))

        interval_secs = _positive_float("interval", interval)
        timeout_secs = _positive_float("socket timeout", socket_timeout)
        probe_secs = _non_negative_float("probe idle seconds", probe_idle_secs)

        level = (log_level or os.getenv(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL).upper()
        if level not in _LOG_LEVELS:
            raise ConfigError(f"Invalid log level: {level}")

        return cls(
            server_host=host,
            server_port=port,
            server_log_file=log_path,
            gaianet_dir=gaianet_path,
            interval=interval_secs,
            output_log=Path(output_log),
            system_prompt=system_prompt or "",
            rag_prompt=rag_prompt or "",
            socket_timeout=timeout_secs,
            probe_idle_secs=probe_secs,
            state_file=Path(state_file) if state_file else None,
            log_level=level,
            diagnostic_log=Path(diagnostic_log) if diagnostic_log else None,
        )


def _positive_float(name: str, value: float | int | str) -> float:
    number = _as_float(name, value)
    if number <= 0:
        raise ConfigError(f"Invalid {name}: {value} (must be greater than 0)")
    return number


def _non_negative_float(name: str, value: float | int | str) -> float:
    number = _as_float(name, value)
    if number < 0:
        raise ConfigError(f"Invalid {name}: {value} (must not be negative)")
    return number


def _as_float(name: str, value: float | int | str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid {name}: {value!r}") from e
    if not math.isfinite(number):
        raise ConfigError(f"Invalid {name}: {value!r}")
    return number
