"""
k3snode/utils/ssh.py

SSHClient runs shell command batches on one remote host through the OpenSSH
client binary. Every command gets its own `ssh` process, i.e. its own
connection and session; nothing is pooled between commands.

Credentials never touch the command line: the private key is resolved by
k3snode.secrets.ssh_keys and written to an ephemeral 0600 file, and passwords
are handed over through an ephemeral SSH_ASKPASS helper reading an environment
variable. Known host keys, when provided, go into an ephemeral known_hosts file
and enable strict checking.

Operations:
  - run:            collect combined stdout+stderr of each command.
  - run_stream:     deliver stdout/stderr lines live to callbacks.
  - wait_for_ready: bounded retry of a bare connection for fresh hosts.
  - read_file:      cat a remote file, optionally tolerating absence.
"""

from __future__ import annotations

import shlex
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncGenerator, Callable, Dict, List, Optional, Sequence, Tuple

from k3snode.models.ssh import RemoteTarget
from k3snode.secrets.ssh_keys import SSHIdentity, load_identity
from k3snode.utils.async_command_runner import (
    CommandError,
    LineCallback,
    OutputLimitError,
    SSHConnectionError,
    run_command,
    stream_command,
)
from k3snode.utils.async_retry import async_retry
from k3snode.utils.ephemeral_file import ephemeral_manager
from k3snode.utils.masking import get_logger, redact

logger = get_logger(__name__)

READY_ATTEMPTS = 10
READY_DELAY = 5.0

# OpenSSH reserves exit status 255 for its own (connection level) errors.
SSH_ERROR_CODE = 255

ASKPASS_ENV_VAR = "K3SNODE_SSH_PASSWORD"
ASKPASS_SCRIPT = f'#!/bin/sh\nprintf \'%s\\n\' "${ASKPASS_ENV_VAR}"\n'.encode("utf-8")


def _discard(_: str) -> None:
    pass


def _pick_callbacks(callbacks: Sequence[LineCallback]) -> Tuple[LineCallback, LineCallback]:
    if len(callbacks) == 0:
        return _discard, _discard
    if len(callbacks) == 1:
        return callbacks[0], callbacks[0]
    if len(callbacks) == 2:
        return callbacks[0], callbacks[1]
    raise ValueError(
        f"run_stream accepts at most two callbacks (stdout, stderr), got {len(callbacks)}"
    )


class SSHClient:
    """
    Remote execution client bound to a single RemoteTarget.

    Args:
        target: Host, port, user and credentials.
        ready_attempts: Attempts made by wait_for_ready.
        ready_delay: Seconds slept between wait_for_ready attempts.
        connect_timeout: Passed to ssh as ConnectTimeout.
    """

    def __init__(
        self,
        target: RemoteTarget,
        *,
        ready_attempts: int = READY_ATTEMPTS,
        ready_delay: float = READY_DELAY,
        connect_timeout: int = 10,
    ) -> None:
        self.target = target
        self.ready_attempts = ready_attempts
        self.ready_delay = ready_delay
        self.connect_timeout = connect_timeout
        self._identity: Optional[SSHIdentity] = None
        if target.private_key:
            # Fail fast on unusable key material.
            self._identity = load_identity(target.private_key, target.key_password)

    def host(self) -> str:
        """The configured `hostname:port` address."""
        return self.target.address

    @asynccontextmanager
    async def _ssh_invocation(self) -> AsyncGenerator[Tuple[List[str], Dict[str, str]], None]:
        """
        Yield the `ssh ... user@host` argv prefix and the extra environment,
        backed by ephemeral credential files that live for the context.
        """
        target = self.target
        ssh_cmd = [
            "ssh",
            "-T",
            "-p",
            str(target.port),
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-o",
            "LogLevel=ERROR",
        ]
        env: Dict[str, str] = {}

        async with AsyncExitStack() as stack:
            if target.host_keys:
                kh_path = await stack.enter_async_context(
                    ephemeral_manager(
                        "ssh_known_hosts",
                        content=("\n".join(target.host_keys) + "\n").encode("utf-8"),
                        prefix="sshkh-",
                    )
                )
                ssh_cmd += [
                    "-o",
                    "StrictHostKeyChecking=yes",
                    "-o",
                    f"UserKnownHostsFile={kh_path}",
                ]
            else:
                ssh_cmd += [
                    "-o",
                    "StrictHostKeyChecking=no",
                    "-o",
                    "UserKnownHostsFile=/dev/null",
                ]
            ssh_cmd += ["-o", "GlobalKnownHostsFile=/dev/null"]

            if self._identity is not None:
                pk_path = await stack.enter_async_context(
                    ephemeral_manager(
                        "ssh_idkey",
                        content=self._identity.private_bytes(),
                        prefix="sshpk-",
                    )
                )
                ssh_cmd += [
                    "-i",
                    pk_path,
                    "-o",
                    "IdentitiesOnly=yes",
                    "-o",
                    "BatchMode=yes",
                ]
            else:
                askpass_path = await stack.enter_async_context(
                    ephemeral_manager(
                        "ssh_askpass",
                        content=ASKPASS_SCRIPT,
                        mode=0o700,
                        prefix="sshap-",
                    )
                )
                ssh_cmd += [
                    "-o",
                    "PreferredAuthentications=password,keyboard-interactive",
                    "-o",
                    "PubkeyAuthentication=no",
                    "-o",
                    "NumberOfPasswordPrompts=1",
                ]
                env = {
                    "SSH_ASKPASS": askpass_path,
                    "SSH_ASKPASS_REQUIRE": "force",
                    "DISPLAY": ":0",
                    ASKPASS_ENV_VAR: target.password or "",
                }

            ssh_cmd.append(f"{target.user}@{target.hostname}")
            yield ssh_cmd, env

    def _wrap_error(
        self, command: str, exc: CommandError, outputs: List[str]
    ) -> CommandError:
        masked = redact(command)
        detail = f": {redact(exc.stderr)}" if exc.stderr else ""
        if exc.return_code == SSH_ERROR_CODE or (
            exc.return_code is None and not isinstance(exc, OutputLimitError)
        ):
            return SSHConnectionError(
                f"create client failed for {self.host()} while running cmd "
                f"'{masked}': {exc}{detail}",
                exc.return_code,
                command=masked,
                outputs=outputs,
                stderr=exc.stderr,
            )
        return CommandError(
            f"cannot run cmd '{masked}': {exc}{detail}",
            exc.return_code,
            command=masked,
            outputs=outputs,
            stderr=exc.stderr,
        )

    async def run(self, *commands: str) -> List[str]:
        """
        Run each command over its own connection and collect its combined
        stdout+stderr.

        Returns:
            One output string per command, in input order.

        Raises:
            CommandError: On the first failing command. `outputs` on the error
                holds the results of the commands that completed before it.
        """
        results: List[str] = []
        async with self._ssh_invocation() as (ssh_cmd, env):
            for command in commands:
                logger.debug("Running on %s: %s", self.host(), command)
                try:
                    output = await run_command(
                        ssh_cmd + [command],
                        env=env or None,
                        retries=1,
                        retry_delay=0.0,
                        merge_stderr=True,
                        strip_output=False,
                    )
                except CommandError as exc:
                    raise self._wrap_error(command, exc, results) from exc
                results.append(output)
        return results

    async def run_stream(
        self, commands: Sequence[str], *callbacks: LineCallback
    ) -> None:
        """
        Run each command over its own connection, delivering output lines live.

        Callbacks:
            none      -> output is discarded
            one       -> stdout and stderr lines both go to it
            two       -> (stdout callback, stderr callback)

        Raises:
            ValueError: If more than two callbacks are given.
            CommandError: On the first failing command; later commands are not run.
        """
        on_stdout, on_stderr = _pick_callbacks(callbacks)
        async with self._ssh_invocation() as (ssh_cmd, env):
            for command in commands:
                logger.debug("Streaming on %s: %s", self.host(), command)
                try:
                    await stream_command(
                        ssh_cmd + [command],
                        on_stdout=on_stdout,
                        on_stderr=on_stderr,
                        env=env or None,
                    )
                except CommandError as exc:
                    raise self._wrap_error(command, exc, []) from exc

    async def _check_connection(self) -> None:
        async with self._ssh_invocation() as (ssh_cmd, env):
            await run_command(
                ssh_cmd + ["exit 0"],
                env=env or None,
                retries=1,
                retry_delay=0.0,
            )

    async def wait_for_ready(self, log: Callable[[str], None]) -> None:
        """
        Try a bare connection up to `ready_attempts` times, `ready_delay`
        seconds apart, calling `log` after every failed attempt but the last.

        Raises:
            SSHConnectionError: Once all attempts failed.
        """
        attempts = self.ready_attempts

        def _report(attempt: int, total: int, exc: Exception) -> None:
            log(f"Waiting for SSH to be ready... ({attempt}/{total})")

        check = async_retry(retries=attempts, delay=self.ready_delay, on_retry=_report)(
            self._check_connection
        )
        try:
            await check()
        except CommandError as exc:
            raise SSHConnectionError(
                f"SSH not ready after {attempts} attempts: {exc}",
                exc.return_code,
                stderr=exc.stderr,
            ) from exc

    async def read_file(
        self, path: str, *, sudo: bool = True, missing_ok: bool = False
    ) -> str:
        """
        Return the contents of a remote file.

        Args:
            path: Remote path.
            sudo: Read with elevated privileges.
            missing_ok: Return "" instead of failing when the file is absent.
        """
        prefix = "sudo " if sudo else ""
        quoted = shlex.quote(path)
        if missing_ok:
            command = f"{prefix}sh -c {shlex.quote(f'test ! -e {quoted} || cat {quoted}')}"
        else:
            command = f"{prefix}cat {quoted}"
        results = await self.run(command)
        return results[0]
