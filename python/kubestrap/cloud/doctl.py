"""
kubestrap/cloud/doctl.py

CloudProvider implementation that shells out to the `doctl` CLI, for operators
who already have doctl authenticated locally. All output is requested as JSON;
anything that does not decode into the expected records is a CloudAPIError.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from kubestrap.errors import CloudAPIError
from kubestrap.models.cloud import Instance, InstanceCreateRequest, SSHKeyRecord
from kubestrap.models.validator import validate_type
from kubestrap.utils.async_command_runner import CommandError, run_command
from kubestrap.utils.ephemeral_file import ephemeral_file

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _looks_not_found(err: CommandError) -> bool:
    lower = err.output.lower()
    return "404" in lower or "not found" in lower


def _parse(raw: Any, expected_type: Type[T], what: str) -> T:
    try:
        return validate_type(raw, expected_type)
    except ValueError as exc:
        raise CloudAPIError(f"unexpected doctl output for {what}: {exc}") from exc


class DoctlProvider:
    """Drives `doctl compute ...` subcommands.

    Args:
        token: Optional access token, exported as DIGITALOCEAN_ACCESS_TOKEN.
        executable: doctl binary name or path.
    """

    def __init__(self, token: Optional[str] = None, executable: str = "doctl") -> None:
        self._env: Optional[Dict[str, str]] = (
            {"DIGITALOCEAN_ACCESS_TOKEN": token} if token else None
        )
        self._executable = executable

    async def _doctl(self, *args: str) -> Any:
        """
        Run doctl and decode its JSON output.

        Raises:
            CommandError: doctl exited non-zero.
            CloudAPIError: The output is not JSON.
        """
        cmd = [self._executable, *args, "--output", "json"]
        logger.info("running doctl %s", " ".join(args))
        out = await run_command(cmd, env=self._env, retries=1)
        try:
            return json.loads(out) if out else []
        except ValueError as exc:
            raise CloudAPIError(
                f"doctl {' '.join(args[:3])} returned invalid JSON: {exc}"
            ) from exc

    async def get_ssh_key(self, fingerprint: str) -> Optional[SSHKeyRecord]:
        try:
            raw = await self._doctl("compute", "ssh-key", "get", fingerprint)
        except CommandError as exc:
            if _looks_not_found(exc):
                return None
            raise CloudAPIError(f"doctl ssh-key get failed: {exc.output or exc}") from exc
        keys = _parse(raw, List[SSHKeyRecord], "ssh-key get")
        return keys[0] if keys else None

    async def import_ssh_key(self, name: str, public_key: str) -> SSHKeyRecord:
        async with ephemeral_file("key.pub", content=public_key + "\n", prefix="sshpub-") as path:
            try:
                raw = await self._doctl(
                    "compute", "ssh-key", "import", name, "--public-key-file", path
                )
            except CommandError as exc:
                raise CloudAPIError(
                    f"doctl ssh-key import failed: {exc.output or exc}"
                ) from exc
        keys = _parse(raw, List[SSHKeyRecord], "ssh-key import")
        if not keys:
            raise CloudAPIError("doctl ssh-key import returned no key")
        return keys[0]

    async def create_instance(self, request: InstanceCreateRequest) -> List[Instance]:
        args = [
            "compute",
            "droplet",
            "create",
            request.name,
            "--image",
            request.image,
            "--region",
            request.region,
            "--size",
            request.size,
            "--ssh-keys",
            ",".join(request.ssh_key_fingerprints),
            "--user-data-file",
            request.user_data_path,
        ]
        if request.wait:
            args.append("--wait")
        try:
            raw = await self._doctl(*args)
        except CommandError as exc:
            raise CloudAPIError(f"doctl droplet create failed: {exc.output or exc}") from exc
        return _parse(raw, List[Instance], "droplet create")
