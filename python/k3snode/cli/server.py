"""
k3snode/cli/server.py

CLI for k3s server nodes. Each subcommand calls exactly one flow from
k3snode.deployment.k3s (or one diagnostic read) and writes the resulting
state as JSON:

  - create  -> create_server
  - read    -> read_server
  - update  -> update_server
  - delete  -> delete_server
  - import  -> import_server
  - status / journal / jwks -> single reads
  - config  -> render a config.yaml locally (no SSH)

Example:
    python -m k3snode.cli.server create \
        --hostname 10.0.0.5 --user ubuntu --private-key ~/.ssh/id_ed25519 \
        --spec server.yaml --state server.json
"""

from __future__ import annotations

import argparse

from k3snode.cli.common import (
    add_target_args,
    build_client,
    load_model,
    read_state,
    run_cli,
    write_state,
)
from k3snode.deployment.k3s import (
    create_server,
    delete_server,
    import_server,
    parse_import_id,
    read_server,
    update_server,
)
from k3snode.k3s.config import server_config_yaml
from k3snode.k3s.server import K3sServer
from k3snode.models.k3s import ServerSpec, ServerState
from k3snode.models.settings import K3sNodeSettings
from k3snode.models.ssh import RemoteTarget
from k3snode.utils.ssh import SSHClient


async def run_create(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    spec = load_model(args.spec, ServerSpec, bin_dir=settings.bin_dir)
    state = await create_server(build_client(args, settings), spec, version=settings.version)
    write_state(args.state, state)


async def run_read(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    state = read_state(args.state, ServerState)
    state = await read_server(build_client(args, settings), state)
    write_state(args.state, state)


async def run_update(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    spec = load_model(args.spec, ServerSpec, bin_dir=settings.bin_dir)
    state = read_state(args.state, ServerState)
    state = await update_server(
        build_client(args, settings), state, spec, version=settings.version
    )
    write_state(args.state, state)


async def run_delete(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    state = read_state(args.state, ServerState)
    await delete_server(build_client(args, settings), state)
    print(f"Uninstalled k3s server from {state.host}")


async def run_import(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    request = parse_import_id(args.id)
    target = RemoteTarget(
        hostname=request.host,
        port=request.port,
        user=request.user,
        private_key=request.private_key,
        password=request.password,
    )
    client = SSHClient(
        target,
        ready_attempts=settings.ready_attempts,
        ready_delay=settings.ready_delay,
    )
    write_state(args.state, await import_server(client, request))


async def run_status(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    server = K3sServer(bin_dir=settings.bin_dir)
    client = build_client(args, settings)
    if args.command == "journal":
        print(await server.journal(client))
    elif args.command == "jwks":
        print(await server.jwks(client))
    elif args.verbose:
        print(await server.status_log(client))
    else:
        print("active" if await server.status(client) else "inactive")


async def run_config(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    text = None
    if args.config:
        with open(args.config, "r", encoding="utf-8") as fh:
            text = fh.read()
    print(server_config_yaml(text, args.data_dir), end="")


def main() -> None:
    settings = K3sNodeSettings()
    parser = argparse.ArgumentParser(
        prog="k3snode.cli.server",
        description="Provision and manage a k3s server node over SSH.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Install a k3s server.")
    add_target_args(create_parser, settings)
    create_parser.add_argument("--spec", help="YAML/JSON ServerSpec file.")
    create_parser.add_argument("--state", help="Where to write the state JSON.")
    create_parser.set_defaults(func=run_create)

    read_parser = subparsers.add_parser("read", help="Resync a server's state.")
    add_target_args(read_parser, settings)
    read_parser.add_argument("--state", required=True, help="State JSON to refresh.")
    read_parser.set_defaults(func=run_read)

    update_parser = subparsers.add_parser("update", help="Push config and restart.")
    add_target_args(update_parser, settings)
    update_parser.add_argument("--spec", required=True, help="YAML/JSON ServerSpec file.")
    update_parser.add_argument("--state", required=True, help="State JSON to update.")
    update_parser.set_defaults(func=run_update)

    delete_parser = subparsers.add_parser("delete", help="Uninstall a k3s server.")
    add_target_args(delete_parser, settings)
    delete_parser.add_argument("--state", required=True, help="State JSON of the server.")
    delete_parser.set_defaults(func=run_delete)

    import_parser = subparsers.add_parser("import", help="Adopt a running server.")
    import_parser.add_argument(
        "--id",
        required=True,
        help="host=..,user=..,port=..,private_key=..,password=..,bin_dir=..,cluster_init=true",
    )
    import_parser.add_argument("--state", help="Where to write the state JSON.")
    import_parser.set_defaults(func=run_import)

    config_parser = subparsers.add_parser("config", help="Render a server config.yaml.")
    config_parser.add_argument("--config", help="YAML config file to start from.")
    config_parser.add_argument("--data-dir", help="k3s data directory.")
    config_parser.set_defaults(func=run_config)

    for name, help_text in (
        ("status", "Print whether the k3s unit is active."),
        ("journal", "Print the k3s unit journal."),
        ("jwks", "Print the service-account JWKS document."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        add_target_args(sub, settings)
        if name == "status":
            sub.add_argument(
                "--verbose", action="store_true", help="Print `systemctl status` output."
            )
        sub.set_defaults(func=run_status)

    args = parser.parse_args()
    run_cli(args, settings, "k3s server")


if __name__ == "__main__":
    main()
