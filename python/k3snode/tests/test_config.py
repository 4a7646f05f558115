import base64

import pytest

from k3snode.k3s.config import (
    CONFIG_PATH,
    REGISTRY_PATH,
    ConfigError,
    config_commands,
    fetch_config,
    fetch_registry,
    parse_config,
    parse_registry,
    registry_commands,
    render_config,
    render_registry,
    server_config_yaml,
    write_file_commands,
)
from k3snode.models.k3s import RegistryConfig
from k3snode.tests.fakes import FakeSSHClient


def test_render_config_is_sorted_and_typed():
    text = render_config({"write-kubeconfig-mode": "0644", "cluster-init": True, "tls-san": ["a", "b"]})
    assert text.splitlines()[0] == "cluster-init: true"
    assert parse_config(text) == {
        "cluster-init": True,
        "tls-san": ["a", "b"],
        "write-kubeconfig-mode": "0644",
    }


def test_parse_config_keeps_bools_and_ints_apart():
    config = parse_config("disable-agent: true\nhttps-listen-port: 6443\n")
    assert config["disable-agent"] is True
    assert config["https-listen-port"] == 6443


def test_parse_empty_config():
    assert parse_config("") == {}


@pytest.mark.parametrize(
    "text",
    ["- a\n- b\n", "key: {nested: map}\n", "key: [1, 2]\n", "a: [\n"],
)
def test_parse_config_rejects_unsupported_values(text):
    with pytest.raises(ConfigError):
        parse_config(text)


def test_registry_round_trip():
    registry = RegistryConfig.model_validate(
        {
            "mirrors": {"docker.io": {"endpoint": ["https://mirror.local"]}},
            "configs": {"mirror.local": {"tls": {"insecure_skip_verify": True}}},
        }
    )
    parsed = parse_registry(render_registry(registry))
    assert parsed is not None
    assert parsed.mirrors["docker.io"].endpoint == ["https://mirror.local"]
    assert parsed.configs["mirror.local"].tls.insecure_skip_verify is True


def test_empty_registry():
    assert render_registry(None) == ""
    assert render_registry(RegistryConfig()) == ""
    assert parse_registry("") is None
    assert registry_commands(RegistryConfig()) == []


def test_write_file_commands_decode_remotely():
    commands = write_file_commands("/etc/x.yaml", "a: 'b'\n")
    assert len(commands) == 3
    encoded = base64.b64encode(b"a: 'b'\n").decode()
    assert encoded in commands[0]
    assert "base64 -d" in commands[1] and "/etc/x.yaml" in commands[1]
    assert commands[2].startswith("sudo rm -f")


def test_config_commands_target_config_path():
    assert CONFIG_PATH in config_commands({"a": "b"})[1]


@pytest.mark.asyncio
async def test_fetch_missing_files():
    client = FakeSSHClient()
    assert await fetch_config(client) == {}
    assert await fetch_registry(client) is None


@pytest.mark.asyncio
async def test_fetch_existing_files():
    client = FakeSSHClient(
        files={
            CONFIG_PATH: "token: abc\n",
            REGISTRY_PATH: "mirrors:\n  docker.io:\n    endpoint: [https://m]\n",
        }
    )
    assert await fetch_config(client) == {"token": "abc"}
    registry = await fetch_registry(client)
    assert registry is not None and "docker.io" in registry.mirrors


def test_server_config_yaml_sets_data_dir():
    text = server_config_yaml('{"node-label": ["foo=bar"], "etcd-expose-metrics": ""}', "/etc/k3s")
    assert parse_config(text) == {
        "data-dir": "/etc/k3s",
        "etcd-expose-metrics": "",
        "node-label": ["foo=bar"],
    }
    assert parse_config(server_config_yaml()) == {"data-dir": "/var/lib/rancher/k3s"}
    with pytest.raises(ConfigError):
        server_config_yaml("- not\n- a mapping\n")
