"""
kubestrap/cloud/provider.py

The three cloud operations a bootstrap consumes. Anything implementing this
Protocol (the REST client, the doctl wrapper, a test stub) can drive a run.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from kubestrap.models.cloud import Instance, InstanceCreateRequest, SSHKeyRecord


class CloudProvider(Protocol):
    async def get_ssh_key(self, fingerprint: str) -> Optional[SSHKeyRecord]:
        """Return the registered key with this fingerprint, or None if absent.

        Raises:
            CloudAPIError: If the lookup itself fails.
        """
        ...

    async def import_ssh_key(self, name: str, public_key: str) -> SSHKeyRecord:
        """Register an OpenSSH public key under `name`.

        Raises:
            CloudAPIError: If the upload is rejected.
        """
        ...

    async def create_instance(self, request: InstanceCreateRequest) -> List[Instance]:
        """Create the instance and return every instance record the call yielded.

        Raises:
            CloudAPIError: If the create call (or waiting for it) fails.
        """
        ...
