"""
Runtime configuration read from the environment (and an optional .env file).

Variables:
- K8S_MCP_OUTPUT_MODE: default output mode for get-style tools (compact/normal/verbose)
- K8S_MCP_CLUSTER_CONFIG: explicit path to clusters.json (checked before the standard paths)
- K8S_MCP_LOG_DIR: directory for the rotating JSON log (default ./logs)
- LOG_LEVEL: DEBUG/INFO/WARNING/ERROR (default INFO)
- K8S_MCP_HOST / K8S_MCP_PORT: bind address for the HTTP server
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    output_mode: str = "normal"
    cluster_config_path: Optional[str] = None
    log_dir: str = "logs"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (ValueError, TypeError):
        return default


def get_settings() -> Settings:
    """Build settings from the current environment"""
    return Settings(
        output_mode=os.getenv("K8S_MCP_OUTPUT_MODE", "normal"),
        cluster_config_path=os.getenv("K8S_MCP_CLUSTER_CONFIG") or None,
        log_dir=os.getenv("K8S_MCP_LOG_DIR", os.path.join(os.getcwd(), "logs")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        host=os.getenv("K8S_MCP_HOST", "0.0.0.0"),
        port=_env_int("K8S_MCP_PORT", 8080),
    )
