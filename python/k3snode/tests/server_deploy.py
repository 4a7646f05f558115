#!/usr/bin/env python3
"""
k3snode/tests/server_deploy.py

Manual acceptance script against a real host: installs a single k3s server,
prints its status and kubeconfig, and optionally uninstalls it again.

    python -m k3snode.tests.server_deploy --hostname 10.0.0.5 --user ubuntu \
        --private-key ~/.ssh/id_ed25519 --teardown
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from k3snode.deployment.k3s import create_server, delete_server
from k3snode.models.k3s import ServerSpec
from k3snode.models.settings import K3sNodeSettings
from k3snode.models.ssh import RemoteTarget
from k3snode.utils.masking import configure_logging
from k3snode.utils.ssh import SSHClient


async def run_server_deploy_test(
    hostname: str,
    user: str,
    private_key_path: str,
    port: int,
    teardown: bool,
) -> None:
    """
      1) Build an SSH client for the host
      2) create_server with an empty config
      3) Print status and the rewritten kubeconfig
      4) If requested, delete_server
    """
    settings = K3sNodeSettings()
    with open(os.path.expanduser(private_key_path), "r", encoding="utf-8") as fpk:
        key_data = fpk.read()

    client = SSHClient(
        RemoteTarget(hostname=hostname, port=port, user=user, private_key=key_data),
        ready_attempts=settings.ready_attempts,
        ready_delay=settings.ready_delay,
    )

    state = await create_server(client, ServerSpec(), version=settings.version)
    print(f"k3s server {state.id} active={state.active} server={state.server}")
    print(state.kubeconfig)

    if teardown:
        await delete_server(client, state)
        print(f"Uninstalled k3s from {hostname}")


def main() -> int:
    """CLI entrypoint for the manual server deployment test."""
    parser = argparse.ArgumentParser(
        description="Manual test: install (and optionally remove) a k3s server."
    )
    parser.add_argument("--hostname", required=True)
    parser.add_argument("--user", required=True)
    parser.add_argument("--private-key", required=True, help="Path to the private key.")
    parser.add_argument("--port", type=int, default=22)
    parser.add_argument("--teardown", action="store_true")
    args = parser.parse_args()

    configure_logging(K3sNodeSettings().log_level)
    try:
        asyncio.run(
            run_server_deploy_test(
                hostname=args.hostname,
                user=args.user,
                private_key_path=args.private_key,
                port=args.port,
                teardown=args.teardown,
            )
        )
    except Exception as exc:
        print(f"Error in server deploy test: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
