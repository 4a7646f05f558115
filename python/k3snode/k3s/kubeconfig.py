"""
k3snode/k3s/kubeconfig.py

Rewrites the API server endpoint of a k3s kubeconfig so it points at the node's
externally reachable address instead of 127.0.0.1.
"""

from __future__ import annotations

import re
from typing import Any, Dict

import yaml

from k3snode.models.k3s import API_PORT

DEFAULT_CLUSTER = "default"

_PORT_SUFFIX = re.compile(r":\d+$")


class KubeconfigError(ValueError):
    """Raised when a kubeconfig cannot be parsed or lacks the default cluster."""


def strip_port(host: str) -> str:
    """
    Drop an explicit port suffix from a host address.

    "node1:22" -> "node1", "[fd00::1]:22" -> "[fd00::1]", "fd00::1" is left alone.
    """
    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    if host.count(":") == 1:
        return _PORT_SUFFIX.sub("", host)
    return host


def api_server_url(host: str) -> str:
    return f"https://{strip_port(host)}:{API_PORT}"


def rewrite_kubeconfig(kubeconfig_text: str, host: str) -> str:
    """
    Point the `default` cluster of a kubeconfig at `https://<host>:6443`.

    Args:
        kubeconfig_text: The kubeconfig YAML as read from the node.
        host: The node address; any `:port` suffix (the SSH port) is dropped.

    Returns:
        The re-serialised kubeconfig.

    Raises:
        KubeconfigError: If the text is not a kubeconfig mapping or has no
            `default` cluster entry.
    """
    try:
        doc = yaml.safe_load(kubeconfig_text)
    except yaml.YAMLError as exc:
        raise KubeconfigError(f"could not parse kubeconfig: {exc}") from exc

    if not isinstance(doc, dict):
        raise KubeconfigError("kubeconfig is not a mapping")

    clusters = doc.get("clusters") or []
    entry: Dict[str, Any] = next(
        (
            c
            for c in clusters
            if isinstance(c, dict) and c.get("name") == DEFAULT_CLUSTER
        ),
        {},
    )
    cluster = entry.get("cluster")
    if not isinstance(cluster, dict):
        raise KubeconfigError(
            f"kubeconfig has no {DEFAULT_CLUSTER!r} cluster entry"
        )

    cluster["server"] = api_server_url(host)
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
