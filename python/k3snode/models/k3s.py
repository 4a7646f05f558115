"""
k3snode/models/k3s.py

Pydantic models for k3s node configuration and lifecycle state:
 - ConfigValue / ConfigMap: typed k3s config.yaml content
 - RegistryConfig: typed k3s registries.yaml content
 - HaConfig, OidcConfig: optional server features
 - ServerSpec, AgentSpec: desired state for a node
 - NodeOutputs, ServerState, AgentState: values harvested from a node
"""

from __future__ import annotations

from typing import Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    model_validator,
)

DEFAULT_BIN_DIR = "/usr/local/bin"
DEFAULT_DATA_DIR = "/var/lib/rancher/k3s"
CONFIG_DIR = "/etc/rancher/k3s"
API_PORT = 6443

# Order matters: bool before int so `true` is not coerced to 1.
ConfigValue = Union[StrictBool, StrictInt, StrictStr, List[StrictStr]]
ConfigMap = Dict[str, ConfigValue]


class RegistryMirror(BaseModel):
    """One entry under `mirrors:` in registries.yaml."""

    model_config = ConfigDict(extra="allow")

    endpoint: List[str] = Field(default_factory=list)
    rewrite: Optional[Dict[str, str]] = None


class RegistryAuth(BaseModel):
    model_config = ConfigDict(extra="allow")

    username: Optional[str] = None
    password: Optional[str] = None
    auth: Optional[str] = None
    identitytoken: Optional[str] = None


class RegistryTLS(BaseModel):
    model_config = ConfigDict(extra="allow")

    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    ca_file: Optional[str] = None
    insecure_skip_verify: Optional[bool] = None


class RegistryHostConfig(BaseModel):
    """One entry under `configs:` in registries.yaml."""

    model_config = ConfigDict(extra="allow")

    auth: Optional[RegistryAuth] = None
    tls: Optional[RegistryTLS] = None


class RegistryConfig(BaseModel):
    """
    k3s private/embedded registry configuration (registries.yaml).
    Unknown top-level keys are kept so a resync does not lose them.
    """

    model_config = ConfigDict(extra="allow")

    mirrors: Dict[str, RegistryMirror] = Field(default_factory=dict)
    configs: Dict[str, RegistryHostConfig] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.mirrors and not self.configs and not self.model_extra


class HaConfig(BaseModel):
    """
    Highly available server settings. The cluster-init node originates the
    join token; every other server joins with `token` against `server`.
    """

    cluster_init: bool = False
    token: Optional[str] = None
    server: Optional[str] = None
    kubeconfig: Optional[str] = None

    @model_validator(mode="after")
    def check_mode(self) -> HaConfig:
        if self.cluster_init and (self.token or self.server):
            raise ValueError(
                "When in cluster-init, token and server must not be passed"
            )
        if not self.cluster_init and (not self.token or not self.server):
            raise ValueError("When not in cluster-init, token and server must be passed")
        return self


class OidcConfig(BaseModel):
    """Service-account token issuer settings for an external OIDC consumer."""

    audience: str
    pkcs8: str
    signing_key: str
    issuer: str
    jwks_keys: Optional[str] = None


class ServerSpec(BaseModel):
    """Desired state of a k3s server node."""

    bin_dir: str = DEFAULT_BIN_DIR
    config: ConfigMap = Field(default_factory=dict)
    registry: Optional[RegistryConfig] = None
    highly_available: Optional[HaConfig] = None
    oidc: Optional[OidcConfig] = None


class AgentSpec(BaseModel):
    """Desired state of a k3s agent node."""

    bin_dir: str = DEFAULT_BIN_DIR
    server: str
    token: str
    config: ConfigMap = Field(default_factory=dict)
    registry: Optional[RegistryConfig] = None
    kubeconfig: Optional[str] = None


class NodeOutputs(BaseModel):
    """Secrets harvested from a node after install or resync."""

    model_config = ConfigDict(frozen=True)

    kubeconfig: str = ""
    token: str = ""
    jwks: Optional[str] = None


class ServerState(BaseModel):
    """Persisted view of a server node, as returned by the lifecycle flows."""

    id: str
    host: str
    port: int = 22
    user: str
    bin_dir: str = DEFAULT_BIN_DIR
    server: str
    active: bool
    kubeconfig: str = ""
    token: str = ""
    config: Optional[str] = None
    registry: Optional[str] = None
    highly_available: Optional[HaConfig] = None
    oidc: Optional[OidcConfig] = None


class AgentState(BaseModel):
    """Persisted view of an agent node."""

    id: str
    host: str
    port: int = 22
    user: str
    bin_dir: str = DEFAULT_BIN_DIR
    server: str
    active: bool
