import argparse
import json
import os
import stat

import pytest

from k3snode.cli.common import add_target_args, build_target, load_model, read_state, write_state
from k3snode.cli.server import run_config
from k3snode.models.k3s import ServerSpec, ServerState
from k3snode.models.settings import K3sNodeSettings


def _parse(argv):
    parser = argparse.ArgumentParser()
    add_target_args(parser, K3sNodeSettings())
    return parser.parse_args(argv)


def test_target_from_args_reads_key_file(tmp_path):
    key_file = tmp_path / "id"
    key_file.write_text("KEY MATERIAL")
    args = _parse(["--hostname", "n1", "--user", "u", "--private-key", str(key_file)])
    target = build_target(args)
    assert target.private_key == "KEY MATERIAL"
    assert target.port == 22
    assert target.host_keys is None


def test_target_auth_is_mutually_exclusive():
    with pytest.raises(SystemExit):
        _parse(["--hostname", "n1", "--user", "u", "--password", "p", "--private-key", "k"])


def test_load_model_from_yaml(tmp_path):
    spec_file = tmp_path / "server.yaml"
    spec_file.write_text("config:\n  cluster-init: true\n")
    spec = load_model(str(spec_file), ServerSpec, bin_dir="/opt/bin")
    assert spec.config == {"cluster-init": True}
    assert spec.bin_dir == "/opt/bin"
    assert load_model(None, ServerSpec).config == {}


def test_state_file_round_trip(tmp_path):
    path = tmp_path / "state.json"
    state = ServerState(
        id="server,n1", host="n1", user="u", server="https://n1:6443", active=True, token="t"
    )
    write_state(str(path), state)
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert json.loads(path.read_text())["token"] == "t"
    assert read_state(str(path), ServerState) == state


@pytest.mark.asyncio
async def test_config_subcommand_prints_rendered_yaml(tmp_path, capsys):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("tls-san:\n- k3s.example.com\n")
    args = argparse.Namespace(config=str(config_file), data_dir="/srv/k3s")
    await run_config(args, K3sNodeSettings())
    out = capsys.readouterr().out
    assert out == "data-dir: /srv/k3s\ntls-san:\n- k3s.example.com\n"
