"""Command-line entry point for the LlamaEdge server assistant.

Exit codes: 0 on graceful shutdown, 2 on argument or configuration errors,
1 when the notification output log cannot be written.
"""

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence

from . import __version__
from .config import (
    DEFAULT_INTERVAL,
    DEFAULT_OUTPUT_LOG,
    DEFAULT_PROBE_IDLE_SECS,
    DEFAULT_SERVER_SOCKET_ADDRESS,
    DEFAULT_SOCKET_TIMEOUT,
    AssistantConfig,
    load_config_file,
)
from .errors import AssistantError, ConfigError
from .logging_manager import LoggingManager
from .monitor_loop import MonitorLoop

logger = logging.getLogger(__name__)

# Defaults applied after the YAML config file, so the file can override them
_DEFAULTS = {
    "server_socket_addr": DEFAULT_SERVER_SOCKET_ADDRESS,
    "server_log_file": None,
    "gaianet_dir": None,
    "interval": DEFAULT_INTERVAL,
    "system_prompt": "",
    "rag_prompt": "",
    "log": DEFAULT_OUTPUT_LOG,
    "socket_timeout": DEFAULT_SOCKET_TIMEOUT,
    "probe_idle_secs": DEFAULT_PROBE_IDLE_SECS,
    "state_file": None,
    "log_level": None,
    "diagnostic_log": None,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llamaedge-assistant",
        description="An assistant for LlamaEdge API Server",
        argument_default=argparse.SUPPRESS,
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--server-socket-addr",
        help=f"Socket address of LlamaEdge API Server instance (default: {DEFAULT_SERVER_SOCKET_ADDRESS})",
    )
    parser.add_argument("--server-log-file", help="Path to the `start-llamaedge.log` file")
    parser.add_argument("--gaianet-dir", help="Path to gaianet directory")
    parser.add_argument(
        "-i", "--interval", type=float,
        help=f"Interval in seconds for sending notifications (default: {DEFAULT_INTERVAL:g})",
    )
    parser.add_argument("--system-prompt", help="System prompt from config.json")
    parser.add_argument("--rag-prompt", help="RAG prompt from config.json")
    parser.add_argument(
        "--log", help=f"Output log for notification records (default: {DEFAULT_OUTPUT_LOG})"
    )
    parser.add_argument("--config", help="YAML file with defaults for any of these options")
    parser.add_argument(
        "--socket-timeout", type=float,
        help=f"Connect timeout in seconds for the socket check (default: {DEFAULT_SOCKET_TIMEOUT:g})",
    )
    parser.add_argument(
        "--probe-idle-secs", type=float,
        help="Seconds without server responses before an HTTP probe is sent, 0 disables "
        f"(default: {DEFAULT_PROBE_IDLE_SECS:g})",
    )
    parser.add_argument(
        "--state-file", help="Persist the log read position here to resume after a restart"
    )
    parser.add_argument(
        "--log-level", help="Diagnostic log level (default: $ASSISTANT_LOG_LEVEL or INFO)"
    )
    parser.add_argument("--diagnostic-log", help="Also write diagnostic logs as JSON lines here")
    return parser


def resolve_config(argv: Sequence[str] | None = None) -> AssistantConfig:
    """
    Parse arguments into a validated configuration.

    Precedence: command line, then the ``--config`` YAML file, then defaults.

    Raises:
        ConfigError: On invalid options or config file
        SystemExit: On ``--help``, ``--version`` or unparseable arguments
    """
    args = vars(build_parser().parse_args(argv))

    options = dict(_DEFAULTS)
    config_file = args.pop("config", None)
    if config_file:
        file_options = load_config_file(config_file)
        unknown = sorted(set(file_options) - set(_DEFAULTS))
        if unknown:
            raise ConfigError(f"Unknown option(s) in {config_file}: {', '.join(unknown)}")
        options.update(file_options)
    options.update(args)

    return AssistantConfig.from_options(
        server_socket_addr=options["server_socket_addr"],
        server_log_file=options["server_log_file"],
        gaianet_dir=options["gaianet_dir"],
        interval=options["interval"],
        output_log=options["log"],
        system_prompt=options["system_prompt"],
        rag_prompt=options["rag_prompt"],
        socket_timeout=options["socket_timeout"],
        probe_idle_secs=options["probe_idle_secs"],
        state_file=options["state_file"],
        log_level=options["log_level"],
        diagnostic_log=options["diagnostic_log"],
    )


async def run(config: AssistantConfig) -> int:
    """Run the monitor loop, stopping gracefully on SIGINT or SIGTERM."""
    monitor = MonitorLoop(config)

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, monitor.stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    try:
        return await monitor.start()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def setup_logging(config: AssistantConfig) -> LoggingManager:
    """
    Configure diagnostic logging for a resolved configuration.

    Raises:
        ConfigError: If the diagnostic log file cannot be created
    """
    try:
        return LoggingManager(config.log_level, config.diagnostic_log)
    except OSError as e:
        raise ConfigError(f"Failed to open diagnostic log {config.diagnostic_log}: {e}") from e


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    try:
        config = resolve_config(argv)
        logging_manager = setup_logging(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    logger.info(f"log file of server assistant: {config.output_log}")
    logger.info(f"Socket address of API server: {config.server_socket_addr}")
    logger.info(f"Log file of API server: {config.server_log_file}")
    logger.info(f"Interval of checking server health: {config.interval:g}")
    logger.info(f"System prompt: {config.system_prompt}")
    logger.info(f"RAG prompt: {config.rag_prompt}")

    try:
        asyncio.run(run(config))
    except AssistantError as e:
        logger.error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        logging_manager.shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
