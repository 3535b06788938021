"""
kubestrap/utils/ssh.py

The remote executor: a thin retrying transport over the `ssh` and `scp` binaries,
used to deliver credentials to a freshly booted node.

  - SSHExecutor.run: runs a remote command, retrying the whole transport so that
    a node that reports "active" before sshd is listening is still reachable.
  - SSHExecutor.copy: copies one file into a remote directory, once.

Host-key handling is an explicit HostKeyPolicy. The default, `accept_any`, skips
verification entirely because a just-created host has no known key yet; pass
`trust_on_first_use` or `strict` together with a known_hosts path to tighten it.
"""

from __future__ import annotations

import logging
import os
import shlex
from typing import List, Optional, Protocol

from kubestrap.errors import RemoteCommandError, RemoteCopyError
from kubestrap.models.ssh import HostKeyPolicy, SSHTarget
from kubestrap.utils.async_command_runner import CommandError, run_command
from kubestrap.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 15.0


class RemoteExecutor(Protocol):
    """What the bootstrapper needs from a remote transport."""

    async def run(self, host: str, *args: str) -> str:
        ...

    async def copy(self, host: str, remote_dir: str, local_path: str) -> str:
        ...


def host_key_options(
    policy: HostKeyPolicy, known_hosts_path: Optional[str] = None
) -> List[str]:
    """
    Build the `-o` options for a host-key policy.

    Raises:
        ValueError: If the policy needs a known_hosts file and none is given.
    """
    opts = ["-o", "BatchMode=yes"]
    if policy == HostKeyPolicy.accept_any:
        return opts + [
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
        ]

    if not known_hosts_path:
        raise ValueError(f"Host key policy '{policy.value}' requires a known_hosts path.")

    checking = "accept-new" if policy == HostKeyPolicy.trust_on_first_use else "yes"
    return opts + [
        "-o",
        f"StrictHostKeyChecking={checking}",
        "-o",
        f"UserKnownHostsFile={known_hosts_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
    ]


class SSHExecutor:
    """Runs commands and copies files on `user@address` hosts with one identity file."""

    def __init__(
        self,
        private_key_path: str,
        *,
        host_key_policy: HostKeyPolicy = HostKeyPolicy.accept_any,
        known_hosts_path: Optional[str] = None,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        port: int = 22,
    ) -> None:
        self._private_key_path = private_key_path
        self._options = host_key_options(host_key_policy, known_hosts_path)
        self._attempts = attempts
        self._retry_delay = retry_delay
        self._port = port

    @property
    def attempts(self) -> int:
        return self._attempts

    def ssh_command(self, host: str, remote_command: List[str]) -> List[str]:
        """Build the full local `ssh` invocation for a remote command."""
        target = SSHTarget.parse(host, port=self._port)
        return [
            "ssh",
            "-p",
            str(target.port),
            "-i",
            self._private_key_path,
            *self._options,
            str(target),
            " ".join(shlex.quote(arg) for arg in remote_command),
        ]

    def scp_command(self, host: str, remote_dir: str, local_path: str) -> List[str]:
        """Build the full local `scp` invocation copying `local_path` into `remote_dir`."""
        target = SSHTarget.parse(host, port=self._port)
        remote_path = f"{remote_dir.rstrip('/')}/{os.path.basename(local_path)}"
        return [
            "scp",
            "-P",
            str(target.port),
            "-i",
            self._private_key_path,
            *self._options,
            local_path,
            f"{target}:{remote_path}",
        ]

    async def run(self, host: str, *args: str) -> str:
        """
        Run `args` on `host`, retrying transport failures.

        Returns:
            The remote command's stdout.

        Raises:
            RemoteCommandError: After `attempts` consecutive failures.
        """
        cmd = self.ssh_command(host, list(args))

        @async_retry(
            retries=self._attempts,
            delay=self._retry_delay,
            noisy=True,
            retry_on=(CommandError,),
        )
        async def _attempt() -> str:
            logger.info("ssh %s: %s", host, " ".join(args))
            return await run_command(cmd, sensitive=False, retries=1, retry_delay=0.0)

        try:
            return await _attempt()
        except CommandError as exc:
            raise RemoteCommandError(
                f"command failed {self._attempts} times on {host}: {exc}",
                attempts=self._attempts,
            ) from exc

    async def copy(self, host: str, remote_dir: str, local_path: str) -> str:
        """
        Copy one file into `remote_dir` on `host`. Not retried: callers run a
        retrying command first to establish connectivity.

        Returns:
            The remote path of the copied file.

        Raises:
            RemoteCopyError: If scp exits non-zero; carries scp's output.
        """
        cmd = self.scp_command(host, remote_dir, local_path)
        remote_path = cmd[-1].split(":", 1)[1]
        logger.info("copying %s to %s:%s", local_path, host, remote_path)
        try:
            await run_command(cmd, sensitive=True, retries=1, retry_delay=0.0)
        except CommandError as exc:
            logger.error("unable to copy file: %s", exc.output)
            raise RemoteCopyError(
                f"unable to copy {local_path} to {host}:{remote_path}: {exc.output or exc}",
                output=exc.output,
            ) from exc
        return remote_path
