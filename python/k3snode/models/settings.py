# k3snode/models/settings.py

from typing import Optional

from pydantic_settings import BaseSettings

from k3snode.models.k3s import DEFAULT_BIN_DIR


class K3sNodeSettings(BaseSettings):
    """
    Process-wide defaults for the CLI and lifecycle flows.
    Fields map to environment variables prefixed with `K3SNODE_`,
    e.g. `K3SNODE_VERSION=v1.30.2+k3s1` or `K3SNODE_READY_DELAY=2`.
    """

    bin_dir: str = DEFAULT_BIN_DIR
    ssh_port: int = 22
    version: Optional[str] = None  # None => installer picks the stable channel
    log_level: str = "INFO"
    ready_attempts: int = 10
    ready_delay: float = 5.0

    class Config:
        env_prefix = "K3SNODE_"
