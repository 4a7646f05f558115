"""
k3snode/cli/common.py

Argument and file helpers shared by the server and agent CLIs:
connection flags -> RemoteTarget -> SSHClient, spec files (YAML or JSON) and
the JSON state file each command reads and rewrites.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel

from k3snode.models.settings import K3sNodeSettings
from k3snode.models.ssh import RemoteTarget
from k3snode.utils.masking import configure_logging, redact
from k3snode.utils.ssh import SSHClient

M = TypeVar("M", bound=BaseModel)


def add_target_args(parser: argparse.ArgumentParser, settings: K3sNodeSettings) -> None:
    """Connection flags. Exactly one of --private-key / --password is required."""
    parser.add_argument("--hostname", required=True, help="Node hostname or IP.")
    parser.add_argument(
        "--port",
        type=int,
        default=settings.ssh_port,
        help=f"SSH port (default: {settings.ssh_port}).",
    )
    parser.add_argument("--user", required=True, help="SSH username.")
    auth = parser.add_mutually_exclusive_group(required=True)
    auth.add_argument(
        "--private-key", help="Path or inline text for the SSH private key (PEM)."
    )
    auth.add_argument("--password", help="SSH password.")
    parser.add_argument(
        "--key-password", default=None, help="Passphrase of an encrypted private key."
    )
    parser.add_argument(
        "--host-key",
        action="append",
        default=None,
        help="known_hosts line for the node; repeat for several. Enables strict checking.",
    )


def _read_key(value: str) -> str:
    # Either a path or the key itself.
    try:
        with open(value, "r", encoding="utf-8") as fpk:
            return fpk.read()
    except OSError:
        return value


def build_target(args: argparse.Namespace) -> RemoteTarget:
    return RemoteTarget(
        hostname=args.hostname,
        port=args.port,
        user=args.user,
        private_key=_read_key(args.private_key) if args.private_key else None,
        key_password=args.key_password,
        password=args.password,
        host_keys=args.host_key,
    )


def build_client(args: argparse.Namespace, settings: K3sNodeSettings) -> SSHClient:
    return SSHClient(
        build_target(args),
        ready_attempts=settings.ready_attempts,
        ready_delay=settings.ready_delay,
    )


def load_model(path: Optional[str], model: Type[M], **defaults: Any) -> M:
    """Load a model from a YAML/JSON file; a missing path yields `defaults` only."""
    data: Any = {}
    if path:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return model.model_validate({**defaults, **data})


def write_state(path: Optional[str], state: BaseModel) -> None:
    """Write state JSON to `path` (0600) or stdout when no path is given."""
    text = state.model_dump_json(indent=2)
    if not path:
        print(text)
        return
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text + "\n")
    # The state holds the join token and the kubeconfig.
    os.chmod(path, 0o600)


def read_state(path: str, model: Type[M]) -> M:
    with open(path, "r", encoding="utf-8") as fh:
        return model.model_validate(json.load(fh))


def run_cli(args: argparse.Namespace, settings: K3sNodeSettings, name: str) -> None:
    """Configure logging and run `args.func`, turning failures into exit code 1."""
    configure_logging(settings.log_level)
    try:
        asyncio.run(args.func(args, settings))
    except Exception as exc:
        print(f"{name} error: {redact(str(exc))}", file=sys.stderr)
        sys.exit(1)
