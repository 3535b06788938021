"""Async stand-ins for openssl, the cloud provider and the remote executor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from kubestrap.errors import CloudAPIError, RemoteCopyError
from kubestrap.models.cloud import (
    Instance,
    InstanceCreateRequest,
    Networks,
    NetworkV4,
    SSHKeyRecord,
)
from kubestrap.secrets.ssh_identity import compute_fingerprint
from kubestrap.utils.async_command_runner import CommandError


def make_instance(address: Optional[str] = "203.0.113.10", name: str = "tcluster-master-nyc1") -> Instance:
    v4 = [NetworkV4(ip_address=address)] if address else []
    return Instance(id=4242, name=name, status="active", networks=Networks(v4=v4))


class FakeOpenSSL:
    """
    Replaces run_command for the CA: records each openssl invocation and writes
    a distinct placeholder file for every `-out` target in `cwd`.
    """

    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.calls: List[List[str]] = []
        self.fail_on = fail_on

    async def __call__(self, command: List[str], *, cwd: Optional[str] = None, **_: object) -> str:
        self.calls.append(list(command))
        args = command[1:]
        if self.fail_on is not None and args[0] == self.fail_on:
            raise CommandError("Command failed with return code 1.", 1, stderr="unable to load key")
        if "-out" in args:
            out = args[args.index("-out") + 1]
            Path(cwd or ".", out).write_text(f"{args[0]} output #{len(self.calls)}\n")
        return ""

    def subcommands(self) -> List[str]:
        return [call[1] for call in self.calls]


class FakeCloud:
    """In-memory key registry plus a scripted create_instance."""

    def __init__(self, instances: Optional[List[Instance]] = None) -> None:
        self.keys: Dict[str, SSHKeyRecord] = {}
        self.imports: List[str] = []
        self.lookups: List[str] = []
        self.create_requests: List[InstanceCreateRequest] = []
        self.user_data: List[Tuple[str, bool, str]] = []
        self.instances = [make_instance()] if instances is None else instances
        self.fail_lookup = False
        self.fail_import = False
        self.fail_create = False

    async def get_ssh_key(self, fingerprint: str) -> Optional[SSHKeyRecord]:
        self.lookups.append(fingerprint)
        if self.fail_lookup:
            raise CloudAPIError("Error looking up ssh key: 500", 500)
        return self.keys.get(fingerprint)

    async def import_ssh_key(self, name: str, public_key: str) -> SSHKeyRecord:
        if self.fail_import:
            raise CloudAPIError("Error importing ssh key: 422", 422)
        fingerprint = compute_fingerprint(public_key)
        record = SSHKeyRecord(id=len(self.keys) + 1, name=name, fingerprint=fingerprint, public_key=public_key)
        self.keys[fingerprint] = record
        self.imports.append(name)
        return record

    async def create_instance(self, request: InstanceCreateRequest) -> List[Instance]:
        self.create_requests.append(request)
        path = request.user_data_path
        exists = os.path.exists(path)
        self.user_data.append((path, exists, Path(path).read_text() if exists else ""))
        if self.fail_create:
            raise CloudAPIError("Error creating droplet: 422", 422)
        return [inst.model_copy(update={"name": request.name}) for inst in self.instances]


class RecordingExecutor:
    """Records run/copy calls; optionally fails the Nth copy."""

    def __init__(self, fail_copy_at: Optional[int] = None) -> None:
        self.runs: List[Tuple[str, Tuple[str, ...]]] = []
        self.copies: List[Tuple[str, str, str]] = []
        self.fail_copy_at = fail_copy_at

    async def run(self, host: str, *args: str) -> str:
        self.runs.append((host, args))
        return ""

    async def copy(self, host: str, remote_dir: str, local_path: str) -> str:
        if self.fail_copy_at is not None and len(self.copies) + 1 == self.fail_copy_at:
            raise RemoteCopyError(
                f"unable to copy {local_path} to {host}:{remote_dir}: lost connection",
                output="lost connection",
            )
        self.copies.append((host, remote_dir, local_path))
        return f"{remote_dir}/{os.path.basename(local_path)}"
