"""
k3snode/k3s/assets.py

Install-time payloads handed to a node: the installer script (base64 encoded)
and the systemd unit template. Assets are read once and passed to components
by reference; callers may supply their own text instead of the packaged files.
"""

from __future__ import annotations

import base64
from importlib import resources
from string import Template

from pydantic import BaseModel, ConfigDict

from k3snode.models.k3s import DEFAULT_BIN_DIR

INSTALL_SCRIPT_NAME = "k3s-install.sh"
SERVICE_TEMPLATE_NAME = "k3s-single.service.tpl"


def _read_packaged(name: str) -> str:
    return (
        resources.files("k3snode.k3s")
        .joinpath("assets")
        .joinpath(name)
        .read_text(encoding="utf-8")
    )


class InstallAssets(BaseModel):
    """Read-only installer script and service unit template text."""

    model_config = ConfigDict(frozen=True)

    install_script: str
    service_template: str

    @classmethod
    def load_default(cls) -> InstallAssets:
        """Load the assets shipped with the package."""
        return cls(
            install_script=_read_packaged(INSTALL_SCRIPT_NAME),
            service_template=_read_packaged(SERVICE_TEMPLATE_NAME),
        )

    def install_script_b64(self) -> str:
        return base64.b64encode(self.install_script.encode("utf-8")).decode("ascii")

    def render_service_unit(self, config_path: str, bin_dir: str = DEFAULT_BIN_DIR) -> str:
        """
        Render the single-node systemd unit for `config_path`, base64 encoded.

        Raises:
            KeyError: If the template references an unknown placeholder.
        """
        rendered = Template(self.service_template).substitute(
            config_path=config_path, bin_dir=bin_dir
        )
        return base64.b64encode(rendered.encode("utf-8")).decode("ascii")
