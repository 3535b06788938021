"""
kubestrap/ca/authority.py

A file-based certificate authority driven through the `openssl` binary. It
creates a root (ca-key.pem / ca.pem) and issues the leaf certificates a single
master cluster needs: API server, a worker template and an admin client.

Root generations:
  Creating a root records the SHA-256 of ca.pem in ca-state.json. Every leaf is
  issued only after checking that ca.pem still matches that generation, and is
  recorded against it. An existing root is never replaced unless `force=True`,
  and replacing it leaves previously issued leaves listed by `stale_leaves()`.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from typing import List, Optional

import aiofiles
import aiofiles.ospath

from kubestrap.ca.profiles import api_server_profile, check_worker_name, worker_profile
from kubestrap.errors import (
    ExternalToolError,
    RootExistsError,
    RootNotFoundError,
    StaleRootError,
)
from kubestrap.models.ca import CAState, IssuedLeaf, LeafFiles
from kubestrap.utils.async_command_runner import CommandError, run_command

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_IP = "10.3.0.1"

ROOT_KEY = "ca-key.pem"
ROOT_CERT = "ca.pem"
STATE_FILE = "ca-state.json"
API_SERVER_PROFILE = "openssl.cnf"
WORKER_PROFILE = "worker-openssl.cnf"

API_SERVER = LeafFiles.for_role("apiserver", "apiserver")
ADMIN = LeafFiles.for_role("admin", "admin")


def worker_files(worker_name: str) -> LeafFiles:
    """Per-worker file names, so several workers' credentials can coexist."""
    check_worker_name(worker_name)
    return LeafFiles.for_role(f"worker:{worker_name}", f"{worker_name}-worker")


class CertificateAuthority:
    """
    Args:
        workdir: Directory all keys, CSRs, certificates and profiles live in.
        service_ip: Cluster IP of the API service (first IP SAN of the API server cert).
        verbose: Log openssl output at INFO. Has no effect on the artifacts.
        key_size: RSA key size for root and leaves.
        root_days: Validity of the self-signed root.
        leaf_days: Validity of each leaf.
    """

    def __init__(
        self,
        workdir: str,
        *,
        service_ip: str = DEFAULT_SERVICE_IP,
        verbose: bool = False,
        key_size: int = 2048,
        root_days: int = 10000,
        leaf_days: int = 365,
    ) -> None:
        self._workdir = workdir
        self._service_ip = service_ip
        self._verbose = verbose
        self._key_size = key_size
        self._root_days = root_days
        self._leaf_days = leaf_days

    def path(self, name: str) -> str:
        return os.path.join(self._workdir, name)

    async def _openssl(self, *args: str) -> str:
        try:
            out = await run_command(
                ["openssl", *args],
                cwd=self._workdir,
                sensitive=False,
                retries=1,
                retry_delay=0.0,
            )
        except CommandError as exc:
            raise ExternalToolError(
                f"openssl {args[0]} failed: {exc}", output=exc.output
            ) from exc
        if self._verbose and out:
            logger.info("openssl %s: %s", args[0], out)
        return out

    # ------------------------------
    # State
    # ------------------------------
    async def _read_state(self) -> Optional[CAState]:
        if not await aiofiles.ospath.exists(self.path(STATE_FILE)):
            return None
        async with aiofiles.open(self.path(STATE_FILE), "r", encoding="utf-8") as fst:
            return CAState.model_validate_json(await fst.read())

    async def _write_state(self, state: CAState) -> None:
        async with aiofiles.open(self.path(STATE_FILE), "w", encoding="utf-8") as fst:
            await fst.write(state.model_dump_json(indent=2))

    async def _hash_root_cert(self) -> str:
        async with aiofiles.open(self.path(ROOT_CERT), "rb") as fcrt:
            return hashlib.sha256(await fcrt.read()).hexdigest()

    async def root_generation(self) -> Optional[str]:
        """The generation recorded for the current root, or None if there is no root."""
        state = await self._read_state()
        return state.generation if state else None

    async def stale_leaves(self) -> List[str]:
        """Names of recorded leaves signed by a root that has since been replaced."""
        state = await self._read_state()
        return state.stale_leaves() if state else []

    async def _validate_root(self) -> CAState:
        """
        Raises:
            RootNotFoundError: If the root key, certificate or ledger is missing.
            StaleRootError: If ca.pem changed since the root was recorded.
        """
        for name in (ROOT_KEY, ROOT_CERT):
            if not await aiofiles.ospath.exists(self.path(name)):
                raise RootNotFoundError(
                    f"{name} not found in {self._workdir}; create the root first"
                )
        state = await self._read_state()
        if state is None:
            raise RootNotFoundError(
                f"{STATE_FILE} not found in {self._workdir}; create the root first"
            )
        current = await self._hash_root_cert()
        if current != state.generation:
            raise StaleRootError(
                f"{ROOT_CERT} does not match root generation {state.generation[:12]}"
            )
        return state

    # ------------------------------
    # Root
    # ------------------------------
    async def create_root(self, force: bool = False) -> str:
        """
        Generate the root key and a self-signed `CN=kube-ca` certificate.

        Args:
            force: Replace an existing root. Leaves issued by the old root are
                kept on the ledger and reported by `stale_leaves()`.

        Returns:
            The new root generation.

        Raises:
            RootExistsError: If a root exists and `force` is False.
            ExternalToolError: If openssl fails.
        """
        existing = [
            name
            for name in (ROOT_KEY, ROOT_CERT)
            if await aiofiles.ospath.exists(self.path(name))
        ]
        if existing and not force:
            raise RootExistsError(
                f"root already exists in {self._workdir} ({', '.join(existing)}); "
                "pass force to replace it"
            )

        os.makedirs(self._workdir, mode=0o700, exist_ok=True)
        previous = await self._read_state()

        await self._openssl("genrsa", "-out", ROOT_KEY, str(self._key_size))
        await self._openssl(
            "req",
            "-x509",
            "-new",
            "-nodes",
            "-key",
            ROOT_KEY,
            "-days",
            str(self._root_days),
            "-out",
            ROOT_CERT,
            "-subj",
            "/CN=kube-ca",
        )

        generation = await self._hash_root_cert()
        state = CAState(
            generation=generation,
            created_at=time.time(),
            leaves=previous.leaves if previous else {},
        )
        await self._write_state(state)
        logger.info("created root generation %s", generation[:12])
        return generation

    # ------------------------------
    # Leaves
    # ------------------------------
    async def _issue(
        self,
        leaf: LeafFiles,
        subject: str,
        profile: Optional[str] = None,
        profile_content: Optional[str] = None,
    ) -> IssuedLeaf:
        """Key, CSR and root-signed certificate for one leaf, in that order."""
        state = await self._validate_root()

        if profile is not None and profile_content is not None:
            async with aiofiles.open(self.path(profile), "w", encoding="utf-8") as fpr:
                await fpr.write(profile_content)

        await self._openssl("genrsa", "-out", leaf.private_key, str(self._key_size))

        req_args = ["req", "-new", "-key", leaf.private_key, "-out", leaf.csr, "-subj", subject]
        if profile is not None:
            req_args += ["-config", profile]
        await self._openssl(*req_args)

        sign_args = [
            "x509",
            "-req",
            "-in",
            leaf.csr,
            "-CA",
            ROOT_CERT,
            "-CAkey",
            ROOT_KEY,
            "-CAcreateserial",
            "-out",
            leaf.certificate,
            "-days",
            str(self._leaf_days),
        ]
        if profile is not None:
            sign_args += ["-extensions", "v3_req", "-extfile", profile]
        await self._openssl(*sign_args)

        issued = IssuedLeaf(
            name=leaf.name,
            certificate=leaf.certificate,
            private_key=leaf.private_key,
            generation=state.generation,
        )
        state.leaves[leaf.name] = issued
        await self._write_state(state)
        logger.info("issued %s", leaf.certificate)
        return issued

    async def issue_api_server_certificate(
        self, master_address: str, *extra_addresses: str
    ) -> IssuedLeaf:
        """
        Issue `CN=kube-apiserver` with the service IP and every given master
        address as IP SANs.

        Raises:
            RootNotFoundError / StaleRootError: If the root is missing or replaced.
            ValueError: If an address does not parse.
            ExternalToolError: If openssl fails.
        """
        await self._validate_root()
        content = api_server_profile(self._service_ip, [master_address, *extra_addresses])
        return await self._issue(
            API_SERVER, "/CN=kube-apiserver", API_SERVER_PROFILE, content
        )

    async def issue_worker_certificate(
        self, worker_name: str, worker_address: str
    ) -> IssuedLeaf:
        """Issue `CN=<worker_name>` into `<worker_name>-worker*.pem` files."""
        await self._validate_root()
        files = worker_files(worker_name)
        content = worker_profile(worker_address)
        return await self._issue(files, f"/CN={worker_name}", WORKER_PROFILE, content)

    async def issue_admin_certificate(self) -> IssuedLeaf:
        """Issue the `CN=kube-admin` client certificate (no extensions)."""
        return await self._issue(ADMIN, "/CN=kube-admin")
