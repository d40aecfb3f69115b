import json
import logging
import os
from typing import Optional

from .errors import ConfigError

logger = logging.getLogger("portbroker-server")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Server configuration from environment variables and an optional JSON file"""

    # Control plane
    HOST: str = os.getenv("PORTBROKER_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORTBROKER_PORT", "3000"))
    DATABASE_FILE: str = os.getenv("PORTBROKER_DB_PATH", "portbroker.db")

    # Public port range handed out to tunnels
    INITIAL_PUBLIC_PORT: int = int(os.getenv("PORTBROKER_INITIAL_PUBLIC_PORT", "9000"))
    PUBLIC_PORT_COUNT: int = int(os.getenv("PORTBROKER_PUBLIC_PORT_COUNT", "1000"))

    # How tunnels are advertised
    REGION: str = os.getenv("PORTBROKER_REGION", "local")
    PUBLIC_HOST: str = os.getenv("PORTBROKER_PUBLIC_HOST", "localhost")
    PUBLIC_URL: str = os.getenv("PORTBROKER_PUBLIC_URL", "http://localhost:3000")
    ADDRESS_MODE: str = os.getenv("PORTBROKER_ADDRESS_MODE", "port")

    # Forwarding
    TARGET_HOST: str = os.getenv("PORTBROKER_TARGET_HOST", "localhost")
    BIND_HOST: str = os.getenv("PORTBROKER_BIND_HOST", "0.0.0.0")
    CONNECT_TIMEOUT: float = float(os.getenv("PORTBROKER_CONNECT_TIMEOUT", "10"))
    SEVER_ON_STOP: bool = _env_bool("PORTBROKER_SEVER_ON_STOP", "false")
    RESTORE_TUNNELS: bool = _env_bool("PORTBROKER_RESTORE_TUNNELS", "true")

    # External IP lookup, only used for the startup log line
    LOOKUP_EXTERNAL_IP: bool = _env_bool("PORTBROKER_LOOKUP_EXTERNAL_IP", "true")
    EXTERNAL_IP_URL: str = os.getenv("PORTBROKER_EXTERNAL_IP_URL", "https://ipinfo.io/json")

    ADDRESS_MODES = ("port", "path")

    # JSON config key -> attribute
    FILE_KEYS = {
        "host": "HOST",
        "port": "PORT",
        "databaseFile": "DATABASE_FILE",
        "initialPublicPort": "INITIAL_PUBLIC_PORT",
        "publicPortCount": "PUBLIC_PORT_COUNT",
        "region": "REGION",
        "publicHost": "PUBLIC_HOST",
        "publicUrl": "PUBLIC_URL",
        "addressMode": "ADDRESS_MODE",
        "targetHost": "TARGET_HOST",
        "bindHost": "BIND_HOST",
        "connectTimeout": "CONNECT_TIMEOUT",
        "severOnStop": "SEVER_ON_STOP",
        "restoreTunnels": "RESTORE_TUNNELS",
        "lookupExternalIp": "LOOKUP_EXTERNAL_IP",
        "externalIpUrl": "EXTERNAL_IP_URL",
    }

    @classmethod
    def load_file(cls, path: str):
        """Overlay settings from a JSON configuration document"""
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

        for key, value in data.items():
            attr = cls.FILE_KEYS.get(key)
            if attr is None:
                logger.warning(f"     Ignoring unknown config key: {key}")
                continue
            current = getattr(cls, attr)
            try:
                if isinstance(current, bool):
                    if not isinstance(value, bool):
                        raise ValueError(f"expected true or false, got {value!r}")
                elif isinstance(value, bool):
                    raise ValueError(f"unexpected boolean {value!r}")
                elif isinstance(current, int):
                    if isinstance(value, float) and not value.is_integer():
                        raise ValueError(f"expected an integer, got {value!r}")
                    value = int(value)
                elif isinstance(current, float):
                    value = float(value)
                else:
                    value = str(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for config key {key}: {e}") from e
            setattr(cls, attr, value)

        logger.info(f"     Loaded configuration from {path}")

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.ADDRESS_MODE not in cls.ADDRESS_MODES:
            raise ConfigError(f"addressMode must be one of {', '.join(cls.ADDRESS_MODES)}, got {cls.ADDRESS_MODE!r}")

        if cls.PUBLIC_PORT_COUNT < 1:
            raise ConfigError("publicPortCount must be at least 1")

        last_port = cls.INITIAL_PUBLIC_PORT + cls.PUBLIC_PORT_COUNT - 1
        if cls.INITIAL_PUBLIC_PORT < 1 or last_port > 65535:
            raise ConfigError(f"Public port range {cls.INITIAL_PUBLIC_PORT}-{last_port} is outside 1-65535")

        if cls.INITIAL_PUBLIC_PORT <= cls.PORT <= last_port:
            logger.warning(f"     Control plane port {cls.PORT} lies inside the public port range")

        if cls.INITIAL_PUBLIC_PORT < 1024:
            logger.warning("     Public ports below 1024 usually require elevated privileges")

        if cls.CONNECT_TIMEOUT <= 0:
            raise ConfigError("connectTimeout must be positive")

    @classmethod
    def public_address(cls, tunnel_id: str, public_port: int) -> str:
        """Externally reachable address for a tunnel"""
        if cls.ADDRESS_MODE == "path":
            return f"{cls.PUBLIC_URL.rstrip('/')}/{tunnel_id}"
        return f"{cls.PUBLIC_HOST}:{public_port}"

    @classmethod
    def status_page(cls, tunnel_id: str) -> str:
        return f"{cls.PUBLIC_URL.rstrip('/')}/status/{tunnel_id}"

    @classmethod
    def external_ip_url(cls) -> Optional[str]:
        return cls.EXTERNAL_IP_URL if cls.LOOKUP_EXTERNAL_IP else None
