"""
k3snode/k3s/server.py

K3sServer: a k3s control-plane node. On top of the shared component lifecycle
it harvests the cluster token and kubeconfig after install, serves the JWKS
document, pushes config updates and reads live config back for import.
"""

from __future__ import annotations

from typing import Any, Optional

from k3snode.k3s.component import (
    SERVICE_ENV_PATH,
    K3sComponent,
    parse_env_file,
    single_result,
)
from k3snode.k3s.config import (
    config_commands,
    fetch_config,
    fetch_registry,
    registry_commands,
)
from k3snode.k3s.kubeconfig import rewrite_kubeconfig
from k3snode.models.k3s import CONFIG_DIR, ConfigMap, NodeOutputs, RegistryConfig
from k3snode.utils.masking import get_logger, mask_secret
from k3snode.utils.ssh import SSHClient

logger = get_logger(__name__)

KUBECONFIG_PATH = f"{CONFIG_DIR}/k3s.yaml"
JWKS_COMMAND = "sudo k3s kubectl get --raw /openid/v1/jwks"


class TokenNotFoundError(RuntimeError):
    """Raised when neither the token file nor the service env file holds a token."""


class K3sServer(K3sComponent):
    """A k3s server node. An empty token means this server originates it."""

    role = "server"
    service_name = "k3s"
    uninstall_script = "k3s-uninstall.sh"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._kubeconfig = ""

    @property
    def kubeconfig(self) -> str:
        return self._kubeconfig

    @property
    def config(self) -> ConfigMap:
        return dict(self._config)

    @property
    def registry(self) -> Optional[RegistryConfig]:
        return self._registry

    @property
    def token_path(self) -> str:
        return f"{self.data_dir}/server/token"

    def outputs(self) -> NodeOutputs:
        return NodeOutputs(kubeconfig=self._kubeconfig, token=self._token)

    async def _after_install(self, client: SSHClient) -> None:
        if not self._token:
            await self.fetch_token(client)
        await self.fetch_kubeconfig(client)

    async def fetch_token(self, client: SSHClient) -> str:
        """
        Read the cluster token from the data dir, falling back to K3S_TOKEN in
        the systemd environment file.

        Raises:
            TokenNotFoundError: If neither location yields a token.
            EnvFileError: If the environment file is malformed.
        """
        token = (await client.read_file(self.token_path, missing_ok=True)).strip()
        if not token:
            logger.debug("No token at %s, trying %s", self.token_path, SERVICE_ENV_PATH)
            env_text = await client.read_file(SERVICE_ENV_PATH, missing_ok=True)
            token = parse_env_file(env_text).get("K3S_TOKEN", "").strip()
        if not token:
            raise TokenNotFoundError(f"no k3s token found on {client.host()}")
        mask_secret(token)
        self._token = token
        return token

    async def fetch_kubeconfig(self, client: SSHClient) -> str:
        """Read the node kubeconfig and point it at the node's address."""
        raw = await client.read_file(KUBECONFIG_PATH)
        mask_secret(raw)
        self._kubeconfig = rewrite_kubeconfig(raw, client.host())
        mask_secret(self._kubeconfig)
        return self._kubeconfig

    async def jwks(self, client: SSHClient) -> str:
        """The service-account issuer's JWKS document, verbatim."""
        result = single_result(await client.run(JWKS_COMMAND), "jwks read")
        mask_secret(result)
        return result

    async def update(self, client: SSHClient) -> None:
        """Push the current config and registry, then restart the service."""
        await client.wait_for_ready(logger.info)
        commands = config_commands(self._config) + registry_commands(self._registry)
        commands.append(f"sudo systemctl restart {self.service_name}")
        logger.info("Updating k3s server on %s", client.host())
        await client.run_stream(commands, *self._output_callbacks(client, ()))

    async def resync(self, client: SSHClient) -> None:
        """Read token, kubeconfig, registry and config back from a live node."""
        if not self._token:
            await self.fetch_token(client)
        await self.fetch_kubeconfig(client)
        self._registry = await fetch_registry(client)
        self._config = await fetch_config(client)
