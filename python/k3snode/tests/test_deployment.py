import pytest
import yaml
from pydantic import ValidationError

from k3snode.deployment.k3s import (
    SA_SIGNER_KEY_PATH,
    SA_SIGNER_PUB_PATH,
    NodeInactiveError,
    build_server,
    create_agent,
    create_server,
    delete_agent,
    delete_server,
    import_server,
    parse_import_id,
    read_agent,
    read_server,
    update_server,
)
from k3snode.k3s.config import CONFIG_PATH, REGISTRY_PATH
from k3snode.k3s.server import KUBECONFIG_PATH
from k3snode.models.k3s import AgentSpec, AgentState, HaConfig, ServerSpec
from k3snode.tests.fakes import KUBECONFIG, FakeSSHClient, RecordingRemover

TOKEN_PATH = "/var/lib/rancher/k3s/server/token"

OIDC = {
    "audience": "sts.example.com",
    "pkcs8": "PUBLIC KEY",
    "signing_key": "PRIVATE KEY",
    "issuer": "https://issuer.example.com",
}


def _live_server(**extra) -> FakeSSHClient:
    files = {KUBECONFIG_PATH: KUBECONFIG, TOKEN_PATH: "K10tok\n"}
    files.update(extra)
    return FakeSSHClient(
        hostname="10.0.0.5",
        files=files,
        responses={
            "is-active": "active\n",
            "/openid/v1/jwks": '{"keys":[]}',
        },
    )


def test_ha_config_validation():
    HaConfig(cluster_init=True)
    HaConfig(token="t", server="https://a:6443")
    with pytest.raises(ValidationError, match="must not be passed"):
        HaConfig(cluster_init=True, token="t")
    with pytest.raises(ValidationError, match="token and server must be passed"):
        HaConfig(token="t")


def test_build_server_plain():
    server = build_server(ServerSpec(config={"node-name": "a"}))
    assert server.config == {"node-name": "a", "embedded-registry": False}
    assert server.token == ""


def test_build_server_with_registry_and_oidc():
    spec = ServerSpec.model_validate(
        {"registry": {"mirrors": {"docker.io": {}}}, "oidc": OIDC}
    )
    server = build_server(spec)
    assert server.config["embedded-registry"] is True
    args = server.config["kube-apiserver-arg"]
    assert "api-audiences=sts.example.com" in args
    assert "service-account-issuer=https://issuer.example.com" in args
    commands = server.prereq_commands()
    assert any(SA_SIGNER_PUB_PATH in c for c in commands)
    assert any(SA_SIGNER_KEY_PATH in c for c in commands)


def test_build_server_ha_modes():
    init = build_server(ServerSpec(highly_available=HaConfig(cluster_init=True)))
    assert init.config["cluster-init"] is True
    assert init.token == ""

    join = build_server(
        ServerSpec(highly_available=HaConfig(token="tok", server="https://a:6443"))
    )
    assert join.config["server"] == "https://a:6443"
    assert join.token == "tok"
    assert "cluster-init" not in join.config


@pytest.mark.asyncio
async def test_create_server(assets):
    client = _live_server()
    state = await create_server(client, ServerSpec(oidc=OIDC), assets=assets)

    assert state.id == "server,10.0.0.5"
    assert state.server == "https://10.0.0.5:6443"
    assert state.active is True
    assert state.token == "K10tok"
    assert "https://10.0.0.5:6443" in state.kubeconfig
    assert state.oidc is not None and state.oidc.jwks_keys == '{"keys":[]}'
    assert yaml.safe_load(state.config)["embedded-registry"] is False
    assert state.registry is None
    assert client.kinds()[:3] == ["ready", "stream", "stream"]


@pytest.mark.asyncio
async def test_create_server_inactive(assets):
    client = _live_server()
    client.responses = {"is-active": "failed\n", "systemctl status": "unit failed"}
    with pytest.raises(NodeInactiveError, match="unit failed") as excinfo:
        await create_server(client, ServerSpec(), assets=assets)
    assert excinfo.value.status_log == "unit failed"


@pytest.mark.asyncio
async def test_read_server_refreshes_state(assets):
    state = await create_server(_live_server(), ServerSpec(), assets=assets)
    client = _live_server(**{CONFIG_PATH: "cluster-init: true\n"})
    client.responses["is-active"] = "inactive\n"

    refreshed = await read_server(client, state)

    assert refreshed.active is False
    assert yaml.safe_load(refreshed.config) == {"cluster-init": True}
    assert refreshed.id == state.id


@pytest.mark.asyncio
async def test_update_server(assets):
    state = await create_server(_live_server(), ServerSpec(), assets=assets)
    client = _live_server()
    spec = ServerSpec.model_validate(
        {"config": {"node-label": ["x=y"]}, "registry": {"mirrors": {"docker.io": {}}}}
    )

    updated = await update_server(client, state, spec)

    assert yaml.safe_load(updated.config)["node-label"] == ["x=y"]
    assert updated.registry is not None
    assert any(REGISTRY_PATH in c for c in client.streamed)
    assert client.streamed[-1] == "sudo systemctl restart k3s"


@pytest.mark.asyncio
async def test_delete_ha_server_leaves_cluster(assets):
    spec = ServerSpec(
        highly_available=HaConfig(token="t", server="https://a:6443", kubeconfig=KUBECONFIG)
    )
    state = await create_server(_live_server(), spec, assets=assets)
    client = FakeSSHClient(responses={"hostname": "node2"})
    remover = RecordingRemover(client)

    await delete_server(client, state, remover=remover)

    assert remover.removed == [(KUBECONFIG, "node2")]
    assert client.streamed == ["sudo bash /usr/local/bin/k3s-uninstall.sh"]


@pytest.mark.asyncio
async def test_delete_single_server_skips_removal(assets):
    state = await create_server(_live_server(), ServerSpec(), assets=assets)
    client = FakeSSHClient()
    remover = RecordingRemover(client)
    await delete_server(client, state, remover=remover)
    assert remover.removed == []
    assert client.kinds() == ["stream"]


def test_parse_import_id():
    request = parse_import_id(
        "host=10.0.0.5,user=ubuntu,port=2222,password=pw,binDir=/opt/bin,cluster_init=true"
    )
    assert request.host == "10.0.0.5"
    assert request.port == 2222
    assert request.bin_dir == "/opt/bin"
    assert request.cluster_init is True
    assert request.private_key is None


def test_parse_import_id_defaults():
    request = parse_import_id("host=a,user=b,password=c")
    assert request.port == 22
    assert request.bin_dir == "/usr/local/bin"
    assert request.cluster_init is None


@pytest.mark.parametrize(
    "import_id, message",
    [
        ("host=a,user", "field=value"),
        ("host=a,user=b,port=ssh", "Could not parse port"),
        ("user=b,password=c", "field=value"),
    ],
)
def test_parse_import_id_errors(import_id, message):
    with pytest.raises(ValueError, match=message):
        parse_import_id(import_id)


@pytest.mark.asyncio
async def test_import_joining_server():
    client = _live_server(**{CONFIG_PATH: "server: https://first:6443\n"})
    request = parse_import_id("host=10.0.0.5,user=ubuntu,password=pw,cluster_init=false")

    state = await import_server(client, request)

    assert state.id == "server,10.0.0.5"
    assert state.highly_available is not None
    assert state.highly_available.server == "https://first:6443"
    assert state.highly_available.token == "K10tok"


@pytest.mark.asyncio
async def test_import_cluster_init_server():
    client = _live_server(**{CONFIG_PATH: "cluster-init: true\n"})
    request = parse_import_id("host=10.0.0.5,user=ubuntu,password=pw,cluster_init=true")
    state = await import_server(client, request)
    assert state.highly_available == HaConfig(cluster_init=True)


@pytest.mark.asyncio
async def test_agent_lifecycle(assets):
    client = FakeSSHClient(hostname="worker1", responses={"is-active": "active\n"})
    spec = AgentSpec(server="https://10.0.0.5:6443", token="K10tok")

    state = await create_agent(client, spec, assets=assets)

    assert state == AgentState(
        id="agent,worker1",
        host="worker1",
        user="ubuntu",
        server="https://10.0.0.5:6443",
        active=True,
    )
    assert any("K3S_URL=https://10.0.0.5:6443" in c for c in client.streamed)

    client.responses["is-active"] = "inactive\n"
    assert (await read_agent(client, state)).active is False

    remover = RecordingRemover(client)
    client.responses["hostname"] = "worker1"
    await delete_agent(client, state, KUBECONFIG, remover=remover)
    assert remover.removed == [(KUBECONFIG, "worker1")]
    assert client.streamed[-1] == "sudo bash /usr/local/bin/k3s-agent-uninstall.sh"
