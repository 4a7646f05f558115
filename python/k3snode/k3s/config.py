"""
k3snode/k3s/config.py

Renders the k3s config map and registry document to their on-disk YAML form,
parses them back, and builds the shell commands that push files to a node.

File contents always travel base64-encoded inside the command text and are
decoded on the remote side, so arbitrary content survives shell quoting.
"""

from __future__ import annotations

import base64
import shlex
from typing import Any, List, Optional

import yaml
from pydantic import TypeAdapter, ValidationError

from k3snode.models.k3s import CONFIG_DIR, DEFAULT_DATA_DIR, ConfigMap, RegistryConfig
from k3snode.utils.ssh import SSHClient

CONFIG_PATH = f"{CONFIG_DIR}/config.yaml"
REGISTRY_PATH = f"{CONFIG_DIR}/registries.yaml"

_config_adapter: TypeAdapter[ConfigMap] = TypeAdapter(ConfigMap)


class ConfigError(ValueError):
    """Raised when a config or registry document cannot be parsed or validated."""


def _load_yaml(text: str, what: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse {what}: {exc}") from exc


def render_config(config: ConfigMap) -> str:
    """Serialise a config map to YAML. Keys are sorted so output is deterministic."""
    return yaml.safe_dump(
        _config_adapter.dump_python(config), sort_keys=True, default_flow_style=False
    )


def parse_config(text: str) -> ConfigMap:
    """
    Parse config.yaml text into a typed ConfigMap. An empty document yields {}.

    Raises:
        ConfigError: On invalid YAML or values outside the supported types.
    """
    data = _load_yaml(text, "k3s config")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("k3s config must be a mapping")
    try:
        return _config_adapter.validate_python(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid k3s config: {exc}") from exc


def server_config_yaml(config: Optional[str] = None, data_dir: Optional[str] = None) -> str:
    """
    Render a server config.yaml from optional YAML text with `data-dir` set,
    defaulting to /var/lib/rancher/k3s.

    Raises:
        ConfigError: If `config` is not a valid k3s config document.
    """
    merged = dict(parse_config(config or ""))
    merged["data-dir"] = data_dir or DEFAULT_DATA_DIR
    return render_config(merged)


def render_registry(registry: Optional[RegistryConfig]) -> str:
    """Serialise a registry document, or "" when there is nothing to write."""
    if registry is None or registry.is_empty():
        return ""
    return yaml.safe_dump(
        registry.model_dump(exclude_none=True), sort_keys=True, default_flow_style=False
    )


def parse_registry(text: str) -> Optional[RegistryConfig]:
    """
    Parse registries.yaml text. Blank or empty documents yield None.

    Raises:
        ConfigError: On invalid YAML or an unexpected document shape.
    """
    data = _load_yaml(text, "k3s registry")
    if not data:
        return None
    if not isinstance(data, dict):
        raise ConfigError("k3s registry must be a mapping")
    try:
        return RegistryConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid k3s registry: {exc}") from exc


def write_file_commands(path: str, content: str) -> List[str]:
    """
    Commands writing `content` to `path` on the remote host: stage the base64
    text in a temp file, decode it into place, then remove the temp file.
    """
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    tmp = f"{path}.b64.tmp"
    return [
        f"echo {shlex.quote(encoded)} | sudo tee {shlex.quote(tmp)} > /dev/null",
        f"sudo sh -c {shlex.quote(f'base64 -d {shlex.quote(tmp)} > {shlex.quote(path)}')}",
        f"sudo rm -f {shlex.quote(tmp)}",
    ]


def config_commands(config: ConfigMap) -> List[str]:
    return write_file_commands(CONFIG_PATH, render_config(config))


def registry_commands(registry: Optional[RegistryConfig]) -> List[str]:
    """Commands writing registries.yaml, or [] when the registry is empty."""
    rendered = render_registry(registry)
    if not rendered:
        return []
    return write_file_commands(REGISTRY_PATH, rendered)


async def fetch_config(client: SSHClient) -> ConfigMap:
    return parse_config(await client.read_file(CONFIG_PATH, missing_ok=True))


async def fetch_registry(client: SSHClient) -> Optional[RegistryConfig]:
    return parse_registry(await client.read_file(REGISTRY_PATH, missing_ok=True))
