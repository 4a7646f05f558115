# models/ssh.py

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List


class RemoteTarget(BaseModel):
    """
    Connection recipe for one reachable host.

    Exactly one of `private_key` or `password` must be set. If host_keys is
    empty the host key is not verified; otherwise strict checking is used
    against those known_hosts lines.
    """

    model_config = ConfigDict(frozen=True)

    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    user: str
    private_key: Optional[str] = None
    key_password: Optional[str] = None
    password: Optional[str] = None
    host_keys: Optional[List[str]] = None

    @field_validator("hostname", "user")
    @classmethod
    def validate_not_blank(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("must be a non-empty string")
        return val.strip()

    @model_validator(mode="after")
    def check_auth(self) -> "RemoteTarget":
        has_key = bool(self.private_key and self.private_key.strip())
        has_password = bool(self.password)
        if has_key and has_password:
            raise ValueError(
                "Both password and private key were passed, only pass one"
            )
        if not has_key and not has_password:
            raise ValueError("Neither password nor private key was passed")
        return self

    @property
    def address(self) -> str:
        """`hostname:port`, with IPv6 literals bracketed."""
        host = self.hostname
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"{host}:{self.port}"
