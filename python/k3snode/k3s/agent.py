"""
k3snode/k3s/agent.py

K3sAgent: a k3s worker node joining an existing server.
"""

from __future__ import annotations

from typing import Any, List

from k3snode.k3s.component import K3sComponent


class K3sAgent(K3sComponent):
    """
    A k3s agent. Installing requires both `server` (the https URL of a server)
    and `token` since an agent never originates a cluster; status and
    uninstall work without them.
    """

    role = "agent"
    service_name = "k3s-agent"
    uninstall_script = "k3s-agent-uninstall.sh"

    def __init__(self, *, server: str = "", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.server = server.strip()

    def install_env(self) -> List[str]:
        if not self.server:
            raise ValueError("agent requires a server url")
        if not self._token:
            raise ValueError("agent requires a join token")
        return super().install_env() + [f"K3S_URL={self.server}"]
