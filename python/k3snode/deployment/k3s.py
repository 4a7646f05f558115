"""
Lifecycle flows for single k3s nodes reached over SSH.

Every flow builds a fresh component from the caller's desired spec (or the
previously persisted state) and returns the new state for the caller to persist.
Nothing is kept between calls.

Server flows:
  1) create_server: derive config (registry, OIDC, HA), prereqs, install,
     verify the unit is active, collect kubeconfig/token/JWKS
  2) read_server:   resync token/kubeconfig/config/registry from the node
  3) update_server: push a new config/registry and restart
  4) delete_server: leave the cluster (HA only), uninstall
  5) import_server: adopt an existing node from an import id

Agent flows: create_agent, read_agent, delete_agent.
"""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from k3snode.k3s.agent import K3sAgent
from k3snode.k3s.assets import InstallAssets
from k3snode.k3s.component import K3sComponent
from k3snode.k3s.config import parse_config, render_config, render_registry
from k3snode.k3s.kubeconfig import api_server_url
from k3snode.k3s.membership import NodeRemover, delete_node
from k3snode.k3s.server import K3sServer
from k3snode.models.k3s import (
    DEFAULT_BIN_DIR,
    AgentSpec,
    AgentState,
    HaConfig,
    OidcConfig,
    ServerSpec,
    ServerState,
)
from k3snode.utils.masking import get_logger
from k3snode.utils.ssh import SSHClient

logger = get_logger(__name__)

SA_SIGNER_PUB_PATH = "/etc/rancher/k3s/tls/sa-signer-pkcs8.pub"
SA_SIGNER_KEY_PATH = "/etc/rancher/k3s/tls/sa-signer.key"

IMPORT_ID_ERROR = "Importing k3s_server requires comma separated field=value"


class NodeInactiveError(RuntimeError):
    """
    The k3s unit is not active after install.

    Attributes:
        status_log: Output of `systemctl status`.
        journal: Output of `journalctl` for the unit.
    """

    def __init__(self, message: str, status_log: str = "", journal: str = "") -> None:
        super().__init__(message)
        self.status_log = status_log
        self.journal = journal


class ImportRequest(BaseModel):
    """Fields carried by a server import id."""

    host: str
    user: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: Optional[str] = None
    password: Optional[str] = None
    bin_dir: str = DEFAULT_BIN_DIR
    cluster_init: Optional[bool] = None


def parse_import_id(import_id: str) -> ImportRequest:
    """
    Parse "host=..,user=..,port=..,private_key=..,password=..,bin_dir=..,cluster_init=true".
    `binDir` is accepted as an alias of `bin_dir`; unknown fields are ignored.

    Raises:
        ValueError: If a field is not of the form field=value, the port is not
            an integer, or host/user are missing.
    """
    fields: Dict[str, object] = {}
    for item in import_id.split(","):
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(IMPORT_ID_ERROR)
        key = key.strip()
        if key == "binDir":
            key = "bin_dir"
        if key == "port":
            try:
                fields["port"] = int(value)
            except ValueError as exc:
                raise ValueError("Could not parse port") from exc
        elif key == "cluster_init":
            fields["cluster_init"] = value.strip() == "true"
        elif key in ImportRequest.model_fields:
            fields[key] = value
    try:
        return ImportRequest.model_validate(fields)
    except ValidationError as exc:
        raise ValueError(f"{IMPORT_ID_ERROR}: {exc}") from exc


def build_server(
    spec: ServerSpec,
    *,
    version: Optional[str] = None,
    assets: Optional[InstallAssets] = None,
    remover: NodeRemover = delete_node,
) -> K3sServer:
    """
    Derive the effective k3s config from a ServerSpec and build the component.

    Registry presence toggles the embedded registry; OIDC adds the api-server
    service-account flags and queues the signing key files; HA adds either
    cluster-init or the server to join.
    """
    config = dict(spec.config)
    config["embedded-registry"] = spec.registry is not None

    oidc = spec.oidc
    if oidc is not None:
        logger.debug("OIDC support requested, adding api-server arguments")
        config["kube-apiserver-arg"] = [
            f"api-audiences={oidc.audience}",
            f"service-account-key-file={SA_SIGNER_PUB_PATH}",
            "service-account-key-file=/var/lib/rancher/k3s/server/tls/service.key",
            f"service-account-signing-key-file={SA_SIGNER_KEY_PATH}",
            f"service-account-issuer={oidc.issuer}",
            "service-account-issuer=k3s",
        ]

    token = ""
    ha = spec.highly_available
    if ha is not None:
        if ha.cluster_init:
            logger.info("Running in node HA init mode")
            config["cluster-init"] = True
        else:
            logger.info("Running in node HA join mode")
            config["server"] = ha.server or ""
            token = ha.token or ""

    server = K3sServer(
        config=config,
        registry=spec.registry,
        token=token,
        version=version,
        bin_dir=spec.bin_dir,
        assets=assets,
        remover=remover,
    )
    if oidc is not None:
        server.add_file(SA_SIGNER_PUB_PATH, oidc.pkcs8)
        server.add_file(SA_SIGNER_KEY_PATH, oidc.signing_key)
    return server


async def _ensure_active(component: K3sComponent, client: SSHClient) -> bool:
    logger.info("Checking k3s systemd status")
    active = await component.status(client)
    if not active:
        status_log = await component.status_log(client)
        journal = await component.journal(client)
        logger.debug("journal for %s:\n%s", component.service_name, journal)
        raise NodeInactiveError(
            f"{component.service_name} is not active on {client.host()}:\n{status_log}",
            status_log=status_log,
            journal=journal,
        )
    return active


def _registry_yaml(server: K3sServer) -> Optional[str]:
    return render_registry(server.registry) or None


async def create_server(
    client: SSHClient,
    spec: ServerSpec,
    *,
    version: Optional[str] = None,
    assets: Optional[InstallAssets] = None,
    remover: NodeRemover = delete_node,
) -> ServerState:
    """
    Provision a k3s server and return its persisted state.

    Raises:
        NodeInactiveError: If the unit is not active after install.
        CommandError: On any remote failure (no rollback; re-running is safe).
    """
    server = build_server(spec, version=version, assets=assets, remover=remover)

    logger.info("Running k3s server prerequisite steps")
    await server.run_prereqs(client)
    await server.run_install(client)
    active = await _ensure_active(server, client)

    oidc: Optional[OidcConfig] = None
    if spec.oidc is not None:
        oidc = spec.oidc.model_copy(update={"jwks_keys": await server.jwks(client)})

    target = client.target
    logger.info("Created k3s server on %s", client.host())
    return ServerState(
        id=f"server,{target.hostname}",
        host=target.hostname,
        port=target.port,
        user=target.user,
        bin_dir=server.bin_dir,
        server=api_server_url(target.address),
        active=active,
        kubeconfig=server.kubeconfig,
        token=server.token,
        config=render_config(server.config),
        registry=_registry_yaml(server),
        highly_available=spec.highly_available,
        oidc=oidc,
    )


async def read_server(client: SSHClient, state: ServerState) -> ServerState:
    """Refresh a persisted server state from the live node."""
    server = K3sServer(
        config=parse_config(state.config or ""),
        bin_dir=state.bin_dir,
    )
    logger.info("Resyncing k3s server on %s", client.host())
    await server.resync(client)
    active = await server.status(client)
    return state.model_copy(
        update={
            "active": active,
            "kubeconfig": server.kubeconfig,
            "token": server.token,
            "config": render_config(server.config),
            "registry": _registry_yaml(server),
        }
    )


async def update_server(
    client: SSHClient,
    state: ServerState,
    spec: ServerSpec,
    *,
    version: Optional[str] = None,
) -> ServerState:
    """Push a changed config/registry to a server and restart it."""
    server = build_server(spec, version=version)
    await server.update(client)
    logger.info("Getting k3s server status")
    active = await server.status(client)
    return state.model_copy(
        update={
            "active": active,
            "config": render_config(server.config),
            "registry": _registry_yaml(server),
        }
    )


async def delete_server(
    client: SSHClient,
    state: ServerState,
    *,
    remover: NodeRemover = delete_node,
) -> None:
    """
    Uninstall a server. HA members first leave the cluster through the
    kubeconfig recorded in their HA config.
    """
    kubeconfig = ""
    if state.highly_available is not None:
        kubeconfig = state.highly_available.kubeconfig or ""
    server = K3sServer(bin_dir=state.bin_dir, remover=remover)
    await server.run_uninstall(client, kubeconfig)


async def import_server(client: SSHClient, request: ImportRequest) -> ServerState:
    """Adopt an already running server described by an import id."""
    server = K3sServer(bin_dir=request.bin_dir)
    logger.info("Resyncing k3s server on %s", client.host())
    await server.resync(client)
    active = await server.status(client)

    ha: Optional[HaConfig] = None
    if request.cluster_init is True:
        ha = HaConfig(cluster_init=True)
    elif request.cluster_init is False:
        join_server = server.config.get("server")
        if isinstance(join_server, str) and join_server:
            ha = HaConfig(cluster_init=False, server=join_server, token=server.token)
        else:
            logger.warning(
                "Imported server %s has no join server in its config", request.host
            )

    target = client.target
    logger.info("Imported k3s server %s", request.host)
    return ServerState(
        id=f"server,{request.host}",
        host=request.host,
        port=request.port,
        user=request.user,
        bin_dir=request.bin_dir,
        server=api_server_url(target.address),
        active=active,
        kubeconfig=server.kubeconfig,
        token=server.token,
        config=render_config(server.config),
        registry=_registry_yaml(server),
        highly_available=ha,
    )


def build_agent(
    spec: AgentSpec,
    *,
    version: Optional[str] = None,
    assets: Optional[InstallAssets] = None,
    remover: NodeRemover = delete_node,
) -> K3sAgent:
    config = dict(spec.config)
    if spec.registry is not None:
        config["embedded-registry"] = True
    return K3sAgent(
        server=spec.server,
        token=spec.token,
        config=config,
        registry=spec.registry,
        version=version,
        bin_dir=spec.bin_dir,
        assets=assets,
        remover=remover,
    )


async def create_agent(
    client: SSHClient,
    spec: AgentSpec,
    *,
    version: Optional[str] = None,
    assets: Optional[InstallAssets] = None,
    remover: NodeRemover = delete_node,
) -> AgentState:
    """
    Provision a k3s agent joining `spec.server` with `spec.token`.

    Raises:
        NodeInactiveError: If the agent unit is not active after install.
    """
    agent = build_agent(spec, version=version, assets=assets, remover=remover)
    await agent.run_prereqs(client)
    await agent.run_install(client)
    active = await _ensure_active(agent, client)

    target = client.target
    logger.info("Created k3s agent on %s", client.host())
    return AgentState(
        id=f"agent,{target.hostname}",
        host=target.hostname,
        port=target.port,
        user=target.user,
        bin_dir=agent.bin_dir,
        server=agent.server,
        active=active,
    )


async def read_agent(client: SSHClient, state: AgentState) -> AgentState:
    agent = K3sAgent(server=state.server, bin_dir=state.bin_dir)
    return state.model_copy(update={"active": await agent.status(client)})


async def delete_agent(
    client: SSHClient,
    state: AgentState,
    kubeconfig: str = "",
    *,
    remover: NodeRemover = delete_node,
) -> None:
    """Remove an agent from the cluster (when a kubeconfig is given) and uninstall it."""
    agent = K3sAgent(
        server=state.server, bin_dir=state.bin_dir, remover=remover
    )
    await agent.run_uninstall(client, kubeconfig)
