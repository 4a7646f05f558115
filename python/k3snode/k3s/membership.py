"""
k3snode/k3s/membership.py

Removes a node from cluster membership before the node itself is torn down,
using the local `kubectl` with an ephemeral kubeconfig.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from k3snode.utils.async_command_runner import run_command
from k3snode.utils.ephemeral_file import ephemeral_manager
from k3snode.utils.masking import get_logger, mask_secret

logger = get_logger(__name__)

# (kubeconfig, node_name) -> None
NodeRemover = Callable[[str, str], Awaitable[None]]


async def delete_node(kubeconfig: str, node_name: str) -> None:
    """
    Delete `node_name` from the cluster described by `kubeconfig`.

    A blank kubeconfig means there is no surrounding cluster to leave (a
    single-node server) and nothing is done. Deleting a node that is already
    gone is not an error.

    Raises:
        CommandError: If kubectl fails.
    """
    if not kubeconfig.strip():
        logger.info("No kubeconfig given, skipping cluster removal of %s", node_name)
        return

    mask_secret(kubeconfig)
    async with ephemeral_manager(
        "kubeconfig", content=kubeconfig.encode("utf-8"), prefix="kubecfg-"
    ) as kubeconfig_path:
        logger.info("Removing node %s from the cluster", node_name)
        await run_command(
            [
                "kubectl",
                "--kubeconfig",
                kubeconfig_path,
                "delete",
                "node",
                node_name,
                "--ignore-not-found",
            ],
            sensitive=False,
            retries=1,
        )
