"""
k3snode/k3s/component.py

K3sComponent holds the desired configuration of one k3s node and turns it into
ordered command batches run through an SSHClient:

  1) run_prereqs:   wait for SSH, stage the installer, write config/registry/extra files
  2) run_install:   run the installer, reload systemd, start the service
  3) run_uninstall: leave the cluster, then run the vendor uninstall script
  4) status / journal / status_log: single diagnostic reads

K3sServer and K3sAgent specialise the role-specific parts. A component is built
fresh for every orchestration call and only keeps in-memory values produced
during that call.
"""

from __future__ import annotations

import io
import shlex
from typing import Dict, List, Optional, Sequence

from dotenv.parser import parse_stream

from k3snode.k3s.assets import INSTALL_SCRIPT_NAME, InstallAssets
from k3snode.k3s.config import (
    CONFIG_PATH,
    config_commands,
    registry_commands,
    write_file_commands,
)
from k3snode.k3s.membership import NodeRemover, delete_node
from k3snode.models.k3s import (
    CONFIG_DIR,
    DEFAULT_BIN_DIR,
    DEFAULT_DATA_DIR,
    ConfigMap,
    RegistryConfig,
)
from k3snode.utils.async_command_runner import LineCallback, RemoteResultError
from k3snode.utils.masking import get_logger, mask_secret
from k3snode.utils.ssh import SSHClient

logger = get_logger(__name__)

SERVICE_ENV_PATH = "/etc/systemd/system/k3s.service.env"


class EnvFileError(ValueError):
    """Raised when a systemd environment file has malformed lines."""


def parse_env_file(text: str) -> Dict[str, str]:
    """
    Parse KEY=VALUE lines of a systemd environment file.

    Raises:
        EnvFileError: If any line cannot be parsed. The offending content is not
            echoed since these files hold secrets.
    """
    values: Dict[str, str] = {}
    for binding in parse_stream(io.StringIO(text)):
        if binding.error:
            raise EnvFileError(
                f"malformed environment file at line {binding.original.line}"
            )
        if binding.key is not None:
            values[binding.key] = binding.value or ""
    return values


def single_result(results: List[str], what: str) -> str:
    if len(results) != 1:
        raise RemoteResultError(
            f"wrong number of results from {what}: expected 1, got {len(results)}"
        )
    return results[0]


class K3sComponent:
    """
    Shared lifecycle of a k3s node.

    Args:
        config: k3s config map written to config.yaml.
        registry: Optional registries.yaml content.
        token: Join token. Empty means this node originates the cluster token.
        version: Optional k3s version pin, e.g. "v1.30.2+k3s1".
        bin_dir: Where the installer and k3s binaries live on the node.
        assets: Installer assets, loaded from the package when omitted.
        remover: Coroutine removing a node from cluster membership.
    """

    role = "server"
    service_name = "k3s"
    uninstall_script = "k3s-uninstall.sh"

    def __init__(
        self,
        *,
        config: Optional[ConfigMap] = None,
        registry: Optional[RegistryConfig] = None,
        token: str = "",
        version: Optional[str] = None,
        bin_dir: str = DEFAULT_BIN_DIR,
        assets: Optional[InstallAssets] = None,
        remover: NodeRemover = delete_node,
    ) -> None:
        self._config: ConfigMap = dict(config or {})
        self._registry = registry
        self._token = token.strip()
        if self._token:
            mask_secret(self._token)
        self.version = version
        self.bin_dir = bin_dir.rstrip("/") or "/"
        self._assets = assets
        self._remover = remover
        # target path -> content
        self._extra_files: Dict[str, str] = {}

    @property
    def token(self) -> str:
        return self._token

    @property
    def assets(self) -> InstallAssets:
        if self._assets is None:
            self._assets = InstallAssets.load_default()
        return self._assets

    @property
    def data_dir(self) -> str:
        value = self._config.get("data-dir")
        if isinstance(value, str) and value:
            return value
        return DEFAULT_DATA_DIR

    @property
    def install_script_path(self) -> str:
        return f"{self.bin_dir}/{INSTALL_SCRIPT_NAME}"

    def add_file(self, path: str, content: str) -> None:
        """Queue an extra file to be written verbatim during prerequisites."""
        self._extra_files[path] = content

    def _output_callbacks(
        self, client: SSHClient, callbacks: Sequence[LineCallback]
    ) -> Sequence[LineCallback]:
        if callbacks:
            return callbacks
        host = client.host()

        def _stdout(line: str) -> None:
            logger.info("[%s] %s", host, line)

        def _stderr(line: str) -> None:
            logger.info("[%s stderr] %s", host, line)

        return (_stdout, _stderr)

    def _stage_installer_commands(self) -> List[str]:
        tmp = shlex.quote(f"{self.bin_dir}/k3s-install.tmp.sh")
        target = shlex.quote(self.install_script_path)
        return [
            f"sudo mkdir -p {shlex.quote(self.bin_dir)}",
            f"echo {shlex.quote(self.assets.install_script_b64())} | sudo tee {tmp} > /dev/null",
            f"sudo sh -c {shlex.quote(f'base64 -d {tmp} > {target}')}",
            f"sudo rm {tmp}",
        ]

    def _extra_file_commands(self) -> List[str]:
        commands: List[str] = []
        for path, content in self._extra_files.items():
            quoted = shlex.quote(path)
            commands.append(f"sudo mkdir -p $(sudo realpath $(dirname {quoted}))")
            commands.extend(write_file_commands(path, content))
        return commands

    def prereq_commands(self) -> List[str]:
        """The full prerequisite batch, in execution order."""
        cfg = config_commands(self._config)
        reg = registry_commands(self._registry)
        extra = self._extra_file_commands()

        commands = self._stage_installer_commands()
        commands += [
            f"sudo mkdir -p {shlex.quote(self.data_dir)}",
            f"sudo mkdir -p {shlex.quote(CONFIG_DIR)}",
        ]
        commands += cfg
        commands += reg
        commands += extra
        return commands

    async def run_prereqs(self, client: SSHClient, *callbacks: LineCallback) -> None:
        """
        Wait for the host, then stage the installer and write every config file.
        Re-running is safe: directories and files are simply overwritten.
        """
        await client.wait_for_ready(logger.info)
        commands = self.prereq_commands()
        logger.debug("Running %d prerequisite commands", len(commands))
        await client.run_stream(commands, *self._output_callbacks(client, callbacks))

    def install_env(self) -> List[str]:
        """Environment assignments passed to the installer script."""
        env = [
            "INSTALL_K3S_SKIP_START=true",
            f"INSTALL_K3S_BIN_DIR={self.bin_dir}",
            f"INSTALL_K3S_EXEC={self.role} --config {CONFIG_PATH}",
        ]
        if self._token:
            env.append(f"K3S_TOKEN={self._token}")
        if self.version:
            env.append(f"INSTALL_K3S_VERSION={self.version}")
        return env

    def install_commands(self) -> List[str]:
        env = " ".join(shlex.quote(item) for item in self.install_env())
        return [
            f"sudo env {env} bash {shlex.quote(self.install_script_path)}",
            "sudo systemctl daemon-reload",
            f"sudo systemctl start {self.service_name}",
        ]

    async def run_install(self, client: SSHClient, *callbacks: LineCallback) -> None:
        """Run the installer, reload systemd and start the service."""
        logger.info("Installing k3s %s on %s", self.role, client.host())
        await client.run_stream(
            self.install_commands(), *self._output_callbacks(client, callbacks)
        )
        await self._after_install(client)

    async def _after_install(self, client: SSHClient) -> None:
        pass

    async def node_name(self, client: SSHClient) -> str:
        """The node's name in the cluster (its hostname)."""
        return single_result(await client.run("hostname"), "hostname").strip()

    async def run_uninstall(
        self, client: SSHClient, kubeconfig: str = "", *callbacks: LineCallback
    ) -> None:
        """
        Remove the node from cluster membership, then run the uninstall script.
        Membership removal is skipped without a kubeconfig. If it fails the
        script is never run.
        """
        if kubeconfig.strip():
            node = await self.node_name(client)
            await self._remover(kubeconfig, node)
        script = shlex.quote(f"{self.bin_dir}/{self.uninstall_script}")
        logger.info("Uninstalling k3s %s from %s", self.role, client.host())
        await client.run_stream(
            [f"sudo bash {script}"], *self._output_callbacks(client, callbacks)
        )

    async def status(self, client: SSHClient) -> bool:
        """True when systemd reports the service as active."""
        results = await client.run(f"systemctl is-active {self.service_name} || true")
        return single_result(results, "service status check").strip() == "active"

    async def journal(self, client: SSHClient) -> str:
        results = await client.run(f"sudo journalctl -xeu {self.service_name} --no-pager")
        return single_result(results, "journal read")

    async def status_log(self, client: SSHClient) -> str:
        results = await client.run(
            f"sudo systemctl status {self.service_name} --no-pager || true"
        )
        return single_result(results, "service status log")
