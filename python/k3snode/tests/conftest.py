from __future__ import annotations

import asyncio
from typing import Iterator

import pytest

from k3snode.k3s.assets import InstallAssets
from k3snode.tests.fakes import FakeExec, FakeSSHClient
from k3snode.utils.masking import secret_masker


@pytest.fixture
def fake_exec(monkeypatch: pytest.MonkeyPatch) -> FakeExec:
    fake = FakeExec()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake)
    return fake


@pytest.fixture(autouse=True)
def _reset_masker() -> Iterator[None]:
    yield
    secret_masker.clear()


@pytest.fixture
def fake_client() -> FakeSSHClient:
    return FakeSSHClient()


@pytest.fixture
def assets() -> InstallAssets:
    return InstallAssets(
        install_script="#!/bin/sh\necho install\n",
        service_template="ExecStart=${bin_dir}/k3s server --config ${config_path}\n",
    )
