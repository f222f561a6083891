"""Binance API credentials.

Lookup order:
1. Environment: BINANCE_API_KEY / BINANCE_API_SECRET
   (BINANCE_TESTNET_API_KEY / BINANCE_TESTNET_API_SECRET when ``testnet``)
2. JSON file at ``config_path``, else BINANCE_CONFIG_PATH, else
   ~/.binance_config.json

Testnet keys are issued separately from live keys, so the file may hold both::

    {"live": {"api_key": "...", "api_secret": "..."},
     "testnet": {"api_key": "...", "api_secret": "..."}}

A flat ``{"api_key": ..., "api_secret": ...}`` file is treated as the live pair.
"""
import json
import os
from pathlib import Path
from typing import Dict, NamedTuple, Optional, Tuple

from .logging_setup import logger

DEFAULT_CONFIG_FILE = Path.home() / ".binance_config.json"


class BinanceCredentials(NamedTuple):
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        # keeps the secret out of logs and tracebacks
        return f"BinanceCredentials(api_key='{self.api_key[:4]}...', api_secret='***')"


def _env_pair(testnet: bool) -> Tuple[Optional[str], Optional[str]]:
    prefix = "BINANCE_TESTNET_" if testnet else "BINANCE_"
    return os.getenv(f"{prefix}API_KEY"), os.getenv(f"{prefix}API_SECRET")


def _file_pair(config_file: Path, testnet: bool) -> Dict[str, str]:
    try:
        with config_file.open("r") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        raise ValueError(f"Failed to load config from {config_file}: {e}")

    profile = "testnet" if testnet else "live"
    if profile in cfg:
        return cfg[profile] or {}
    if testnet:
        return {}
    return cfg


def load_credentials(config_path: Optional[str] = None, testnet: bool = False) -> BinanceCredentials:
    """Load the key pair for the live venue or the testnet.

    Raises:
        ValueError: If no complete pair is found or the file is unreadable
    """
    api_key, api_secret = _env_pair(testnet)
    if api_key and api_secret:
        return BinanceCredentials(api_key=api_key, api_secret=api_secret)

    config_file = Path(config_path or os.getenv("BINANCE_CONFIG_PATH") or DEFAULT_CONFIG_FILE)
    if config_file.exists():
        pair = _file_pair(config_file, testnet)
        api_key = pair.get("api_key") or api_key
        api_secret = pair.get("api_secret") or api_secret

    if not api_key or not api_secret:
        venue = "testnet" if testnet else "live"
        raise ValueError(
            f"Missing Binance {venue} credentials. Provide via:\n"
            f"  - Environment: {'BINANCE_TESTNET_' if testnet else 'BINANCE_'}API_KEY / ..._API_SECRET\n"
            f"  - Config file: {config_file}\n"
            "  - BINANCE_CONFIG_PATH env var to override config location"
        )

    return BinanceCredentials(api_key=api_key, api_secret=api_secret)


def save_config(config_path: str, api_key: str, api_secret: str, testnet: bool = False) -> None:
    """Store a key pair under its profile, keeping any pair already saved for the other one.

    Stores secrets in plaintext; the file is chmod 600 where supported.
    """
    cfg_file = Path(config_path)
    cfg = {}
    if cfg_file.exists():
        with cfg_file.open("r") as f:
            cfg = json.load(f)
        if "live" not in cfg and "testnet" not in cfg and cfg:
            cfg = {"live": cfg}

    cfg["testnet" if testnet else "live"] = {"api_key": api_key, "api_secret": api_secret}
    cfg_file.parent.mkdir(parents=True, exist_ok=True)
    with cfg_file.open("w") as f:
        json.dump(cfg, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        logger.warning(f"Could not restrict permissions on {cfg_file}")
