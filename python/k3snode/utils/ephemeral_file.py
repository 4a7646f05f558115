"""
k3snode/utils/ephemeral_file.py

Async context manager for short-lived secret files (SSH identities, askpass
helpers, kubeconfigs). Files live in a private directory under `/dev/shm` when
it exists so secrets stay off disk, and everything is removed on exit.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles

DEFAULT_PARENT_DIR = "/dev/shm"


def _parent_dir(parent_dir: Optional[str]) -> Optional[str]:
    if parent_dir is not None:
        return parent_dir
    if os.path.isdir(DEFAULT_PARENT_DIR) and os.access(DEFAULT_PARENT_DIR, os.W_OK):
        return DEFAULT_PARENT_DIR
    # Let tempfile pick the platform default.
    return None


@asynccontextmanager
async def ephemeral_manager(
    file_name: str,
    *,
    content: Optional[bytes] = None,
    mode: int = 0o600,
    prefix: str = "k3snode-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Create a private (0700) directory holding one file and yield the file path.

    Args:
        file_name: Name of the file inside the ephemeral directory.
        content: If given, written to the file before yielding.
        mode: File permissions applied after writing.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory. Defaults to `/dev/shm`
            when writable, otherwise the system temp dir.

    Yields:
        The absolute path of the ephemeral file.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=_parent_dir(parent_dir), prefix=prefix)
    ephemeral_path = os.path.join(ephemeral_dir, file_name)

    try:
        if content is not None:
            async with aiofiles.open(ephemeral_path, "wb") as fh:
                await fh.write(content)
            os.chmod(ephemeral_path, mode)
        yield ephemeral_path

    finally:
        if os.path.isdir(ephemeral_dir):
            for item in os.listdir(ephemeral_dir):
                item_path = os.path.join(ephemeral_dir, item)
                if os.path.isfile(item_path) or os.path.islink(item_path):
                    os.remove(item_path)
            os.rmdir(ephemeral_dir)
