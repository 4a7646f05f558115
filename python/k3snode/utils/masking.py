"""
k3snode/utils/masking.py

Keeps a process-wide set of secret strings (join tokens, kubeconfigs, JWKS)
and scrubs them from log records and error messages.

Every module logger is obtained through get_logger(), which attaches the shared
SecretMasker filter, so records are masked before any handler sees them.
"""

from __future__ import annotations

import logging
import threading
from typing import Set

MASK = "***"


class SecretMasker(logging.Filter):
    """
    A logging filter that replaces every registered secret with MASK.

    Longer secrets are replaced first so a secret that contains another secret
    is masked as a whole.
    """

    def __init__(self) -> None:
        super().__init__()
        self._secrets: Set[str] = set()
        self._lock = threading.Lock()

    def add(self, value: str) -> None:
        """Register an exact string to be masked. Blank values are ignored."""
        if not value or not value.strip():
            return
        with self._lock:
            self._secrets.add(value)
            stripped = value.strip()
            if stripped != value:
                self._secrets.add(stripped)

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()

    def redact(self, text: str) -> str:
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redact(record.getMessage())
        record.args = None
        return True


secret_masker = SecretMasker()


def mask_secret(value: str) -> None:
    """Register `value` so it never appears in subsequent log output."""
    secret_masker.add(value)


def redact(text: str) -> str:
    return secret_masker.redact(text)


def get_logger(name: str) -> logging.Logger:
    """
    Return logging.getLogger(name) with the shared SecretMasker attached.
    """
    logger = logging.getLogger(name)
    if secret_masker not in logger.filters:
        logger.addFilter(secret_masker)
    return logger


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging for CLI usage and mask secrets on every root handler,
    which also covers records from third-party loggers.
    """
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for handler in logging.getLogger().handlers:
        if secret_masker not in handler.filters:
            handler.addFilter(secret_masker)
