"""
k3snode/cli/agent.py

CLI for k3s agent nodes:

  - create  -> create_agent
  - read    -> read_agent
  - delete  -> delete_agent (leaves the cluster first when --kubeconfig is given)
  - status  -> single read
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
from k3snode.deployment.k3s import create_agent, delete_agent, read_agent
from k3snode.k3s.agent import K3sAgent
from k3snode.models.k3s import AgentSpec, AgentState
from k3snode.models.settings import K3sNodeSettings


async def run_create(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    spec = load_model(args.spec, AgentSpec, bin_dir=settings.bin_dir)
    state = await create_agent(build_client(args, settings), spec, version=settings.version)
    write_state(args.state, state)


async def run_read(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    state = read_state(args.state, AgentState)
    write_state(args.state, await read_agent(build_client(args, settings), state))


async def run_delete(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    state = read_state(args.state, AgentState)
    kubeconfig = ""
    if args.kubeconfig:
        with open(args.kubeconfig, "r", encoding="utf-8") as fh:
            kubeconfig = fh.read()
    await delete_agent(build_client(args, settings), state, kubeconfig)
    print(f"Uninstalled k3s agent from {state.host}")


async def run_status(args: argparse.Namespace, settings: K3sNodeSettings) -> None:
    agent = K3sAgent(bin_dir=settings.bin_dir)
    client = build_client(args, settings)
    if args.verbose:
        print(await agent.status_log(client))
    else:
        print("active" if await agent.status(client) else "inactive")


def main() -> None:
    settings = K3sNodeSettings()
    parser = argparse.ArgumentParser(
        prog="k3snode.cli.agent",
        description="Provision and manage a k3s agent node over SSH.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Install a k3s agent.")
    add_target_args(create_parser, settings)
    create_parser.add_argument(
        "--spec", required=True, help="YAML/JSON AgentSpec file (server and token)."
    )
    create_parser.add_argument("--state", help="Where to write the state JSON.")
    create_parser.set_defaults(func=run_create)

    read_parser = subparsers.add_parser("read", help="Refresh an agent's state.")
    add_target_args(read_parser, settings)
    read_parser.add_argument("--state", required=True, help="State JSON to refresh.")
    read_parser.set_defaults(func=run_read)

    delete_parser = subparsers.add_parser("delete", help="Uninstall a k3s agent.")
    add_target_args(delete_parser, settings)
    delete_parser.add_argument("--state", required=True, help="State JSON of the agent.")
    delete_parser.add_argument(
        "--kubeconfig", help="Cluster kubeconfig used to remove the node first."
    )
    delete_parser.set_defaults(func=run_delete)

    status_parser = subparsers.add_parser("status", help="Print agent unit status.")
    add_target_args(status_parser, settings)
    status_parser.add_argument(
        "--verbose", action="store_true", help="Print `systemctl status` output."
    )
    status_parser.set_defaults(func=run_status)

    args = parser.parse_args()
    run_cli(args, settings, "k3s agent")


if __name__ == "__main__":
    main()
