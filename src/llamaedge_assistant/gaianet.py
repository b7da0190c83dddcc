"""Node identity lookup in the gaianet directory.

The device id lives in ``gaia-frp/frpc.toml`` under ``metadatas.deviceId``
and the node domain in ``config.json`` under ``domain``. Both are optional
context for notification records: missing or malformed files only produce
a warning.
"""

from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

FRPC_TOML = Path("gaia-frp") / "frpc.toml"
CONFIG_JSON = Path("config.json")


@dataclass(frozen=True)
class NodeIdentity:
    device_id: str | None = None
    domain: str | None = None


def resolve_identity(gaianet_dir: str | Path) -> NodeIdentity:
    """Read the node's device id and domain from the gaianet directory."""
    base = Path(gaianet_dir)
    identity = NodeIdentity(
        device_id=_read_device_id(base / FRPC_TOML),
        domain=_read_domain(base / CONFIG_JSON),
    )
    logger.info(f"Device ID: {identity.device_id}, Domain: {identity.domain}")
    return identity


def _read_device_id(frpc_toml: Path) -> str | None:
    if not frpc_toml.is_file():
        logger.warning(f"Invalid frpc.toml file path: {frpc_toml}")
        return None

    try:
        with frpc_toml.open("rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Failed to parse the content of frpc.toml file: {e}")
        return None

    metadatas = data.get("metadatas")
    device_id = metadatas.get("deviceId") if isinstance(metadatas, dict) else None
    if not isinstance(device_id, str):
        logger.warning("Failed to get the device id from frpc.toml file.")
        return None
    return device_id


def _read_domain(config_json: Path) -> str | None:
    if not config_json.is_file():
        logger.warning(f"Invalid config.json file path: {config_json}")
        return None

    try:
        data = json.loads(config_json.read_text())
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to parse the content of config.json file: {e}")
        return None

    domain = data.get("domain") if isinstance(data, dict) else None
    if not isinstance(domain, str):
        logger.warning("Failed to get the domain from config.json file.")
        return None
    return domain
