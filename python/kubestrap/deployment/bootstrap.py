"""
kubestrap/deployment/bootstrap.py

Bootstraps a single-master cluster end to end. Stages run strictly in order and
the first failure ends the run:

  1) ENSURE_IDENTITY  - local SSH keypair exists and is registered => fingerprint
  2) INIT_CA          - root (reused unless forced), worker and admin certificates
  3) RENDER_CLOUD_INIT - master cloud-config in a temp file, removed on every exit
  4) CREATE_INSTANCE  - exactly one master instance, created and waited on
  5) EXTRACT_ADDRESS  - the master's first IPv4 address
  6) ISSUE_API_SERVER_CERTIFICATE - API server cert naming the real address
  7) INSTALL_CREDENTIALS - staging dir on the master + 5 credential files

Progress is written to <workdir>/bootstrap-state.json after every completed
stage and on failure, so a second run resumes at the failed stage instead of
re-running steps that already happened (a second master, a second root...).
Resuming past CREATE_INSTANCE with a different image, region, size or overlay
is refused. force_root on a resumed run reopens the stages that depend on the
root, so the new root is used for every certificate and reinstalled.
Nothing created before a failure is rolled back.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional

import aiofiles
import aiofiles.ospath

from kubestrap.ca.authority import ADMIN, API_SERVER, ROOT_CERT, CertificateAuthority
from kubestrap.cloud.provider import CloudProvider
from kubestrap.errors import (
    BootstrapError,
    KubestrapError,
    MissingAddressError,
    UnexpectedInstanceCountError,
)
from kubestrap.models.bootstrap import BootstrapProgress, BootstrapResult, BootstrapStage
from kubestrap.models.cloud import Instance, InstanceCreateRequest
from kubestrap.models.settings import ClusterSettings
from kubestrap.secrets.ssh_identity import SSHIdentityManager
from kubestrap.utils.cloud_init import render_cloud_init
from kubestrap.utils.ssh import RemoteExecutor, SSHExecutor

logger = logging.getLogger(__name__)

PROGRESS_FILE = "bootstrap-state.json"
KNOWN_HOSTS_FILE = "known_hosts"

# Copied to the master in this order.
CREDENTIAL_FILES: List[str] = [
    ROOT_CERT,
    API_SERVER.certificate,
    API_SERVER.private_key,
    ADMIN.certificate,
    ADMIN.private_key,
]

# Stages whose output depends on the CA root; redone when the root is replaced.
ROOT_DEPENDENT_STAGES: List[BootstrapStage] = [
    BootstrapStage.INIT_CA,
    BootstrapStage.ISSUE_API_SERVER_CERTIFICATE,
    BootstrapStage.INSTALL_CREDENTIALS,
]


async def load_progress(workdir: str) -> Optional[BootstrapProgress]:
    """Read <workdir>/bootstrap-state.json, or None if no run was recorded."""
    path = os.path.join(workdir, PROGRESS_FILE)
    if not await aiofiles.ospath.exists(path):
        return None
    async with aiofiles.open(path, "r", encoding="utf-8") as fprog:
        return BootstrapProgress.model_validate_json(await fprog.read())


class ClusterBootstrapper:
    """
    Args:
        settings: Everything configurable about the run.
        cloud: Cloud provider used for key registration and instance creation.
        executor: Remote transport; defaults to an SSHExecutor using the
            cluster key and the configured host key policy.
        ca: Certificate authority; defaults to one rooted at settings.workdir.
        identity: SSH identity manager; defaults to one rooted at settings.workdir.
    """

    def __init__(
        self,
        settings: ClusterSettings,
        cloud: CloudProvider,
        *,
        executor: Optional[RemoteExecutor] = None,
        ca: Optional[CertificateAuthority] = None,
        identity: Optional[SSHIdentityManager] = None,
    ) -> None:
        self._settings = settings
        self._workdir = settings.workdir
        self._cloud = cloud
        self._identity = identity or SSHIdentityManager(
            settings.workdir, settings.name, cloud
        )
        self._ca = ca or CertificateAuthority(
            settings.workdir,
            service_ip=settings.service_ip,
            verbose=settings.verbose,
        )
        self._executor: RemoteExecutor = executor or SSHExecutor(
            self._identity.private_key_path,
            host_key_policy=settings.host_key_policy,
            known_hosts_path=os.path.join(settings.workdir, KNOWN_HOSTS_FILE),
            attempts=settings.ssh_attempts,
            retry_delay=settings.ssh_retry_delay,
        )

    @property
    def progress_path(self) -> str:
        return os.path.join(self._workdir, PROGRESS_FILE)

    async def _save(self, progress: BootstrapProgress) -> None:
        async with aiofiles.open(self.progress_path, "w", encoding="utf-8") as fprog:
            await fprog.write(progress.model_dump_json(indent=2))

    async def _complete(self, progress: BootstrapProgress, stage: BootstrapStage) -> None:
        progress.mark_done(stage)
        await self._save(progress)
        logger.info("stage %s complete", stage.value)

    @asynccontextmanager
    async def _stage(
        self, progress: BootstrapProgress, stage: BootstrapStage, action: str
    ) -> AsyncGenerator[None, None]:
        """Annotate any failure in the block with `stage`/`action` and record it."""
        try:
            yield
        except KubestrapError as exc:
            if exc.stage is None:
                exc.annotate(stage, action)
                await self._record_failure(progress, exc)
            raise
        except Exception as exc:
            err = BootstrapError(f"{type(exc).__name__}: {exc}").annotate(stage, action)
            await self._record_failure(progress, err)
            raise err from exc

    async def _record_failure(
        self, progress: BootstrapProgress, err: KubestrapError
    ) -> None:
        progress.failed_stage = err.stage
        progress.last_error = str(err)
        logger.error("stage %s failed: %s", err.stage.value if err.stage else "?", err)
        await self._save(progress)

    def _instance_settings(self) -> Dict[str, str]:
        return {
            "name": self._settings.instance_name,
            "image": self._settings.image,
            "region": self._settings.region,
            "size": self._settings.size,
            "overlay_cidr": self._settings.overlay_cidr,
        }

    def _check_instance_settings(self, progress: BootstrapProgress) -> None:
        """
        Refuse to resume past CREATE_INSTANCE with settings that would shape a
        different master than the one already created.

        Raises:
            BootstrapError: If the recorded master was built from other settings.
        """
        current = self._instance_settings()
        if progress.is_done(BootstrapStage.CREATE_INSTANCE) and progress.instance_settings:
            changed = sorted(
                key
                for key, value in current.items()
                if progress.instance_settings.get(key) != value
            )
            if changed:
                raise BootstrapError(
                    "recorded master was created with different settings ("
                    + ", ".join(
                        f"{key}: {progress.instance_settings.get(key)!r} -> {current[key]!r}"
                        for key in changed
                    )
                    + "); pass --no-resume to start over"
                )
        progress.instance_settings = current

    async def _start(self, resume: bool, force_root: bool) -> BootstrapProgress:
        os.makedirs(self._workdir, mode=0o700, exist_ok=True)
        progress: Optional[BootstrapProgress] = None
        if resume:
            previous = await load_progress(self._workdir)
            if previous is not None and previous.cluster_name == self._settings.name:
                if previous.last_completed is not None:
                    logger.info("resuming after stage %s", previous.last_completed.value)
                progress = previous
            elif previous is not None:
                logger.warning(
                    "ignoring recorded progress for cluster %r", previous.cluster_name
                )
        if progress is None:
            progress = BootstrapProgress(cluster_name=self._settings.name)

        self._check_instance_settings(progress)
        if force_root and progress.is_done(BootstrapStage.INIT_CA):
            logger.warning(
                "replacing the root: certificates and installed credentials will be redone"
            )
            progress.reopen(ROOT_DEPENDENT_STAGES)
        await self._save(progress)
        return progress

    # ------------------------------
    # Stages
    # ------------------------------
    async def _init_ca(self, progress: BootstrapProgress, force_root: bool) -> None:
        stage = BootstrapStage.INIT_CA
        async with self._stage(progress, stage, "could not create root"):
            if force_root or await self._ca.root_generation() is None:
                await self._ca.create_root(force=force_root)
            else:
                logger.info("reusing existing root")

        if not self._settings.defer_api_server_certificate:
            async with self._stage(progress, stage, "could not create api server key pair"):
                await self._ca.issue_api_server_certificate(
                    self._settings.api_server_placeholder
                )

        async with self._stage(progress, stage, "could not create worker key pair"):
            await self._ca.issue_worker_certificate(
                self._settings.worker_name, self._settings.worker_address
            )
        async with self._stage(progress, stage, "could not create admin key pair"):
            await self._ca.issue_admin_certificate()

    async def _create_instance(self, progress: BootstrapProgress) -> Instance:
        assert progress.fingerprint is not None, "fingerprint missing after identity stage"
        name = self._settings.instance_name

        async with self._stage(
            progress, BootstrapStage.RENDER_CLOUD_INIT, "could not render cloud-config"
        ):
            async with render_cloud_init(self._settings.overlay_cidr) as user_data_path:
                progress.mark_done(BootstrapStage.RENDER_CLOUD_INIT)
                async with self._stage(
                    progress, BootstrapStage.CREATE_INSTANCE, "could not create master"
                ):
                    logger.info("booting master: %s", name)
                    request = InstanceCreateRequest(
                        name=name,
                        image=self._settings.image,
                        region=self._settings.region,
                        size=self._settings.size,
                        ssh_key_fingerprints=[progress.fingerprint],
                        user_data_path=user_data_path,
                        wait=True,
                    )
                    instances = await self._cloud.create_instance(request)
                    if len(instances) != 1:
                        raise UnexpectedInstanceCountError(len(instances))
        return instances[0]

    def _extract_address(self, instance: Instance) -> str:
        address = instance.first_ipv4()
        if address is None:
            raise MissingAddressError(f"instance {instance.name} has no IPv4 address")
        return address

    async def _install_credentials(self, address: str) -> List[str]:
        host = f"{self._settings.ssh_user}@{address}"
        stage_dir = self._settings.stage_dir

        await self._executor.run(host, "mkdir", "-p", stage_dir)
        return [
            await self._executor.copy(host, stage_dir, self._ca.path(name))
            for name in CREDENTIAL_FILES
        ]

    # ------------------------------
    # Entry point
    # ------------------------------
    async def run(self, resume: bool = True, force_root: bool = False) -> BootstrapResult:
        """
        Run (or resume) the bootstrap.

        Args:
            resume: Skip stages recorded as completed by a previous run.
            force_root: Replace an existing CA root instead of reusing it. On a
                resumed run the certificates and the credential install are
                redone against the new root.

        Returns:
            BootstrapResult describing the master and the installed credentials.

        Raises:
            KubestrapError: The first failure, annotated with its stage and
                action. Its concrete type (UnexpectedInstanceCountError,
                RemoteCopyError, ...) is preserved.
        """
        progress = await self._start(resume, force_root)

        if not progress.is_done(BootstrapStage.ENSURE_IDENTITY):
            async with self._stage(
                progress, BootstrapStage.ENSURE_IDENTITY, "creating ssh key"
            ):
                progress.fingerprint = await self._identity.ensure_identity()
            await self._complete(progress, BootstrapStage.ENSURE_IDENTITY)
        logger.info("using %s as ssh key", progress.fingerprint)

        if not progress.is_done(BootstrapStage.INIT_CA):
            await self._init_ca(progress, force_root)
            await self._complete(progress, BootstrapStage.INIT_CA)
            if not self._settings.defer_api_server_certificate:
                await self._complete(progress, BootstrapStage.ISSUE_API_SERVER_CERTIFICATE)

        if not progress.is_done(BootstrapStage.CREATE_INSTANCE):
            progress.instance = await self._create_instance(progress)
            await self._complete(progress, BootstrapStage.CREATE_INSTANCE)

        if not progress.is_done(BootstrapStage.EXTRACT_ADDRESS):
            assert progress.instance is not None, "instance missing after create stage"
            async with self._stage(
                progress, BootstrapStage.EXTRACT_ADDRESS, "could not find master address"
            ):
                progress.master_address = self._extract_address(progress.instance)
            logger.info("master ip is %s", progress.master_address)
            await self._complete(progress, BootstrapStage.EXTRACT_ADDRESS)

        assert progress.master_address is not None
        if not progress.is_done(BootstrapStage.ISSUE_API_SERVER_CERTIFICATE):
            async with self._stage(
                progress,
                BootstrapStage.ISSUE_API_SERVER_CERTIFICATE,
                "could not create api server key pair",
            ):
                await self._ca.issue_api_server_certificate(
                    progress.master_address, self._settings.api_server_placeholder
                )
            await self._complete(progress, BootstrapStage.ISSUE_API_SERVER_CERTIFICATE)

        if not progress.is_done(BootstrapStage.INSTALL_CREDENTIALS):
            async with self._stage(
                progress,
                BootstrapStage.INSTALL_CREDENTIALS,
                "unable to configure credentials",
            ):
                progress.installed_files = await self._install_credentials(
                    progress.master_address
                )
            await self._complete(progress, BootstrapStage.INSTALL_CREDENTIALS)

        assert progress.fingerprint is not None and progress.instance is not None
        return BootstrapResult(
            fingerprint=progress.fingerprint,
            instance_name=progress.instance.name,
            master_address=progress.master_address,
            installed_files=progress.installed_files,
        )
