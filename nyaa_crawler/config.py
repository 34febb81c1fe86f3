# nyaa_crawler/config.py

import configparser
import logging
import os
from dataclasses import dataclass, fields
from typing import Any
from urllib.parse import urlsplit

from .exceptions import ConfigError

# --- Constants ---
DEFAULT_DB_PATH = "./nyaa.db"
DEFAULT_URL = "https://nyaa.si/"
DEFAULT_CONFIG_FILE = "config.ini"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT = 30.0
PROXY_ENV_VAR = "PROXY_URL"

SOCKS_SCHEMES = ("socks5", "socks5h")
HTTP_PROXY_SCHEMES = ("http", "https")

# Setup basic logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)
logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class AppConfig:
    """Settings resolved once at start-up and handed to every component."""

    db_path: str = DEFAULT_DB_PATH
    url: str = DEFAULT_URL
    proxy_url: str | None = None
    rpc_proxy_url: str | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout: float = DEFAULT_TIMEOUT
    backoff_unit: float = 1.0
    layout_file: str | None = None
    transmission_url: str | None = None
    aria2_url: str | None = None


def validate_proxy_url(proxy_url: str | None) -> str | None:
    """
    Checks a proxy URL and returns it normalised, or None for a direct connection.

    ``socks5://`` (and ``socks5h://``) URLs tunnel the whole TCP connection,
    ``http://`` and ``https://`` URLs are used as CONNECT forward proxies.
    """
    if proxy_url is None or not proxy_url.strip():
        return None

    candidate = proxy_url.strip()
    try:
        parts = urlsplit(candidate)
        port = parts.port  # raises ValueError on a non-numeric port
    except ValueError as exc:
        raise ConfigError(f"Malformed proxy URL '{candidate}': {exc}") from exc

    scheme = parts.scheme.lower()
    if scheme not in SOCKS_SCHEMES + HTTP_PROXY_SCHEMES:
        raise ConfigError(
            f"Unsupported proxy scheme '{parts.scheme}' in '{candidate}'"
            " (expected http, https or socks5)"
        )
    if not parts.hostname:
        raise ConfigError(f"Proxy URL '{candidate}' has no host")
    if port is not None and port <= 0:
        raise ConfigError(f"Proxy URL '{candidate}' has an invalid port")
    return candidate


def load_configuration(
    config_path: str = DEFAULT_CONFIG_FILE, **overrides: Any
) -> AppConfig:
    """
    Builds the application configuration.

    Precedence, lowest first: built-in defaults, the optional INI file, the
    ``PROXY_URL`` environment variable, then any non-None keyword override
    (typically command-line flags).
    """
    values: dict[str, Any] = {}

    if os.path.exists(config_path):
        values.update(_read_config_file(config_path))
    else:
        logger.info(
            f"[CONFIG] No configuration file at '{config_path}'; using defaults."
        )

    env_proxy = os.environ.get(PROXY_ENV_VAR)
    if env_proxy:
        values["proxy_url"] = env_proxy

    known = {f.name for f in fields(AppConfig)}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown configuration option '{key}'")
        if value is not None:
            values[key] = value

    config = AppConfig(**values)
    config.proxy_url = validate_proxy_url(config.proxy_url)
    config.rpc_proxy_url = validate_proxy_url(config.rpc_proxy_url)

    if config.max_attempts < 1:
        raise ConfigError("max_attempts must be at least 1")
    if config.timeout <= 0:
        raise ConfigError("timeout must be positive")

    logger.info(f"[CONFIG] Database path: {config.db_path}")
    if config.proxy_url:
        logger.info(f"[CONFIG] Using proxy: {config.proxy_url}")
    else:
        logger.info("[CONFIG] No proxy configured, using direct connection")
    return config


def _read_config_file(config_path: str) -> dict[str, Any]:
    """Reads the [crawler], [proxy] and [destinations] sections of an INI file."""
    parser = configparser.ConfigParser()
    try:
        with open(config_path, encoding="utf-8") as f:
            parser.read_file(f)
    except configparser.Error as e:
        raise ConfigError(f"Could not parse '{config_path}': {e}") from e

    values: dict[str, Any] = {}
    string_options = {
        ("crawler", "db_path"): "db_path",
        ("crawler", "url"): "url",
        ("crawler", "layout_file"): "layout_file",
        ("proxy", "url"): "proxy_url",
        ("proxy", "rpc_url"): "rpc_proxy_url",
        ("destinations", "transmission"): "transmission_url",
        ("destinations", "aria2"): "aria2_url",
    }
    for (section, option), key in string_options.items():
        raw = parser.get(section, option, fallback="").strip()
        if raw:
            values[key] = raw

    try:
        if parser.has_option("crawler", "max_attempts"):
            values["max_attempts"] = parser.getint("crawler", "max_attempts")
        if parser.has_option("crawler", "timeout"):
            values["timeout"] = parser.getfloat("crawler", "timeout")
        if parser.has_option("crawler", "backoff_unit"):
            values["backoff_unit"] = parser.getfloat("crawler", "backoff_unit")
    except ValueError as e:
        raise ConfigError(f"Invalid number in '{config_path}': {e}") from e

    logger.info(f"[CONFIG] Loaded configuration from '{config_path}'.")
    return values
