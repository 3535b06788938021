"""
kubestrap/secrets/ssh_identity.py

Local SSH identity management:
 - generate_rsa_key_pair: a fresh unencrypted RSA keypair (PEM private, OpenSSH public)
 - compute_fingerprint: MD5 over the key blob, the cloud registry's key handle
 - SSHIdentityManager.ensure_identity: create-if-missing locally, then
   register-if-missing with the cloud provider, returning the fingerprint

Key material lives in the working directory at fixed names (k8s.key, k8s.key.pub).
At most one keypair is ever generated per working directory; later runs reuse it.
The lookup-then-import registration is not atomic, so two concurrent runs for
the same cluster may both import.
"""

from __future__ import annotations

import base64
import functools
import logging
import os
from typing import Tuple

import aiofiles
import aiofiles.ospath
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from kubestrap.cloud.provider import CloudProvider
from kubestrap.errors import CloudAPIError, ExternalToolError, KeyRegistrationError
from kubestrap.models.ssh import SSHIdentity

logger = logging.getLogger(__name__)

PRIVATE_KEY_NAME = "k8s.key"
PUBLIC_KEY_NAME = PRIVATE_KEY_NAME + ".pub"


def generate_rsa_key_pair(comment: str = "") -> Tuple[str, str]:
    """Return (private_key_pem, public_key_openssh) for a new 2048-bit RSA key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    private_key = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")

    return private_key, public_key_from_private(private_key, comment)


def public_key_from_private(private_key: str, comment: str = "") -> str:
    """Derive the OpenSSH public key line from an unencrypted PEM private key."""
    key = serialization.load_pem_private_key(private_key.encode("utf-8"), password=None)
    public_key = (
        key.public_key()
        .public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
        .decode("utf-8")
    )
    if comment:
        public_key = f"{public_key} {comment}"
    return public_key + "\n"


def compute_fingerprint(public_key: str) -> str:
    """
    Fingerprint an OpenSSH public key line as colon-separated MD5 hex
    (what `ssh-keygen -E md5 -l` prints after the "MD5:" prefix).
    Only the key blob is hashed; the trailing comment never affects the result.

    Raises:
        ValueError: If `public_key` is not a parseable OpenSSH public key.
    """
    key = serialization.load_ssh_public_key(public_key.strip().encode("utf-8"))
    normalized = key.public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    )
    blob = base64.b64decode(normalized.split(b" ")[1])

    digest = hashes.Hash(hashes.MD5())
    digest.update(blob)
    hex_digest = digest.finalize().hex()
    return ":".join(hex_digest[i : i + 2] for i in range(0, len(hex_digest), 2))


class SSHIdentityManager:
    """
    Owns the SSH keypair under `workdir` and its registration with the cloud.

    Args:
        workdir: Working directory holding k8s.key / k8s.key.pub.
        key_name: Name the public key is registered under (the cluster name).
        cloud: Provider whose key registry authorizes the new instance.
    """

    def __init__(self, workdir: str, key_name: str, cloud: CloudProvider) -> None:
        self._workdir = workdir
        self._key_name = key_name
        self._cloud = cloud

    @property
    def private_key_path(self) -> str:
        return os.path.join(self._workdir, PRIVATE_KEY_NAME)

    @property
    def public_key_path(self) -> str:
        return os.path.join(self._workdir, PUBLIC_KEY_NAME)

    async def ensure_keypair(self) -> bool:
        """
        Generate the keypair if the private key file does not exist. A private
        key whose public half is missing gets the public key rebuilt from it.

        Returns:
            True if a new keypair was written, False if one already existed.

        Raises:
            ExternalToolError: If the key cannot be generated, read or written.
        """
        comment = f"kubestrap@{self._key_name}"
        try:
            if await aiofiles.ospath.exists(self.private_key_path):
                if not await aiofiles.ospath.exists(self.public_key_path):
                    logger.warning("rebuilding missing %s", self.public_key_path)
                    async with aiofiles.open(self.private_key_path, "r", encoding="utf-8") as fpk:
                        private_key = await fpk.read()
                    await self._write_public_key(
                        public_key_from_private(private_key, comment)
                    )
                return False

            logger.info("creating ssh key: %s", self.private_key_path)
            os.makedirs(self._workdir, mode=0o700, exist_ok=True)
            private_key, public_key = generate_rsa_key_pair(comment=comment)
            # Public half first: an existing private key marks the pair complete.
            await self._write_public_key(public_key)
            async with aiofiles.open(
                self.private_key_path,
                "w",
                encoding="utf-8",
                opener=functools.partial(os.open, mode=0o600),
            ) as fpk:
                await fpk.write(private_key)
        except OSError as exc:
            raise ExternalToolError(f"could not write ssh key: {exc}") from exc
        except ValueError as exc:
            raise ExternalToolError(
                f"could not load private key {self.private_key_path}: {exc}"
            ) from exc
        return True

    async def _write_public_key(self, public_key: str) -> None:
        async with aiofiles.open(self.public_key_path, "w", encoding="utf-8") as fpub:
            await fpub.write(public_key)

    async def read_public_key(self) -> str:
        try:
            async with aiofiles.open(self.public_key_path, "r", encoding="utf-8") as fpub:
                return (await fpub.read()).strip()
        except OSError as exc:
            raise ExternalToolError(
                f"could not read public key {self.public_key_path}: {exc}"
            ) from exc

    async def fingerprint(self) -> str:
        """Recompute the fingerprint from the public key on disk."""
        public_key = await self.read_public_key()
        try:
            return compute_fingerprint(public_key)
        except ValueError as exc:
            raise ExternalToolError(
                f"could not fingerprint {self.public_key_path}: {exc}"
            ) from exc

    async def ensure_identity(self) -> str:
        """
        Make sure a local keypair exists and is registered with the cloud.

        Returns:
            The key fingerprint.

        Raises:
            ExternalToolError: Local key generation or fingerprinting failed.
            KeyRegistrationError: The registry lookup or the upload failed.
        """
        await self.ensure_keypair()
        fingerprint = await self.fingerprint()
        logger.info("fingerprint is %s", fingerprint)

        try:
            existing = await self._cloud.get_ssh_key(fingerprint)
        except CloudAPIError as exc:
            raise KeyRegistrationError(
                f"unable to look up ssh key {fingerprint}: {exc}"
            ) from exc

        if existing is not None:
            logger.info("key existed in api")
            return fingerprint

        logger.info("uploading key to api: %s", self.public_key_path)
        public_key = await self.read_public_key()
        try:
            await self._cloud.import_ssh_key(self._key_name, public_key)
        except CloudAPIError as exc:
            raise KeyRegistrationError(f"unable to upload public key: {exc}") from exc

        logger.info("key uploaded")
        return fingerprint

    async def load_identity(self) -> SSHIdentity:
        """Describe the on-disk identity (keypair must already exist)."""
        return SSHIdentity(
            private_key_path=self.private_key_path,
            public_key_path=self.public_key_path,
            fingerprint=await self.fingerprint(),
        )
