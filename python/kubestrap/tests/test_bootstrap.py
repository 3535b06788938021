from __future__ import annotations

import os
from pathlib import Path

import pytest

from fakes import FakeCloud, FakeOpenSSL, RecordingExecutor, make_instance
from kubestrap.ca.authority import CertificateAuthority
from kubestrap.deployment.bootstrap import (
    CREDENTIAL_FILES,
    ClusterBootstrapper,
    load_progress,
)
from kubestrap.errors import (
    BootstrapError,
    CloudAPIError,
    ExternalToolError,
    KeyRegistrationError,
    MissingAddressError,
    RemoteCopyError,
    UnexpectedInstanceCountError,
)
from kubestrap.models.bootstrap import STAGE_ORDER, BootstrapStage
from kubestrap.models.settings import ClusterSettings


def _bootstrapper(
    settings: ClusterSettings, cloud: FakeCloud, executor: RecordingExecutor
) -> ClusterBootstrapper:
    return ClusterBootstrapper(settings, cloud, executor=executor)


async def test_end_to_end(
    settings: ClusterSettings,
    cloud: FakeCloud,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    result = await _bootstrapper(settings, cloud, executor).run()

    assert result.master_address == "203.0.113.10"
    assert result.instance_name == "tcluster-master-nyc1"
    assert result.installed_files == [f"/home/core/ssl/{name}" for name in CREDENTIAL_FILES]

    # Staging dir first, then the five files in order.
    assert executor.runs == [("core@203.0.113.10", ("mkdir", "-p", "/home/core/ssl"))]
    assert [os.path.basename(local) for _, _, local in executor.copies] == CREDENTIAL_FILES
    assert {(host, rdir) for host, rdir, _ in executor.copies} == {
        ("core@203.0.113.10", "/home/core/ssl")
    }

    for name in ("k8s.key", "k8s.key.pub", "ca.pem", "ca-key.pem", "apiserver.pem",
                 "admin.pem", "worker.example.com-worker.pem"):
        assert (workdir / name).exists(), name

    profile = (workdir / "openssl.cnf").read_text()
    assert "IP.1 = 10.3.0.1" in profile
    assert "203.0.113.10" in profile
    assert "127.0.0.1" in profile

    request = cloud.create_requests[0]
    assert request.name == "tcluster-master-nyc1"
    assert request.image == "coreos-alpha"
    assert request.size == "4gb"
    assert request.ssh_key_fingerprints == [result.fingerprint]

    progress = await load_progress(str(workdir))
    assert progress is not None
    assert progress.completed == STAGE_ORDER
    assert progress.failed_stage is None


async def test_api_server_cert_issued_after_address(
    settings: ClusterSettings,
    cloud: FakeCloud,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
) -> None:
    await _bootstrapper(settings, cloud, executor).run()

    subjects = [call[call.index("-subj") + 1] for call in fake_openssl.calls
                if call[1] == "req" and "-subj" in call]
    assert subjects == ["/CN=kube-ca", "/CN=worker.example.com", "/CN=kube-admin",
                        "/CN=kube-apiserver"]


async def test_placeholder_only_when_not_deferred(
    settings: ClusterSettings,
    cloud: FakeCloud,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    legacy = settings.model_copy(update={"defer_api_server_certificate": False})

    await _bootstrapper(legacy, cloud, executor).run()

    profile = (workdir / "openssl.cnf").read_text()
    assert "127.0.0.1" in profile
    assert "203.0.113.10" not in profile
    assert len(executor.copies) == 5

    progress = await load_progress(str(workdir))
    assert progress is not None
    assert progress.completed == [
        BootstrapStage.ENSURE_IDENTITY,
        BootstrapStage.INIT_CA,
        BootstrapStage.ISSUE_API_SERVER_CERTIFICATE,
        BootstrapStage.RENDER_CLOUD_INIT,
        BootstrapStage.CREATE_INSTANCE,
        BootstrapStage.EXTRACT_ADDRESS,
        BootstrapStage.INSTALL_CREDENTIALS,
    ]


@pytest.mark.parametrize("count", [0, 2])
async def test_unexpected_instance_count(
    settings: ClusterSettings,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
    count: int,
) -> None:
    cloud = FakeCloud(instances=[make_instance(f"203.0.113.{i + 10}") for i in range(count)])

    with pytest.raises(UnexpectedInstanceCountError) as exc_info:
        await _bootstrapper(settings, cloud, executor).run()

    assert str(count) in str(exc_info.value)
    assert exc_info.value.stage == BootstrapStage.CREATE_INSTANCE
    assert executor.runs == [] and executor.copies == []

    progress = await load_progress(str(workdir))
    assert progress is not None
    assert BootstrapStage.EXTRACT_ADDRESS not in progress.completed
    assert progress.failed_stage == BootstrapStage.CREATE_INSTANCE


async def test_cloud_config_removed_on_success_and_failure(
    settings: ClusterSettings,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
) -> None:
    ok = FakeCloud()
    await _bootstrapper(settings, ok, executor).run()
    path, existed, content = ok.user_data[0]
    assert existed
    assert "'{ \"Network\": \"10.3.0.0/16\" }'" in content
    assert not os.path.exists(path)

    broken = FakeCloud()
    broken.fail_create = True
    other = settings.model_copy(update={"name": "other"})
    with pytest.raises(CloudAPIError):
        await _bootstrapper(other, broken, RecordingExecutor()).run(resume=False)
    path, existed, _ = broken.user_data[0]
    assert existed
    assert not os.path.exists(path)


async def test_copy_failure_keeps_type_and_context(
    settings: ClusterSettings,
    cloud: FakeCloud,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    executor = RecordingExecutor(fail_copy_at=3)

    with pytest.raises(RemoteCopyError) as exc_info:
        await _bootstrapper(settings, cloud, executor).run()

    err = exc_info.value
    assert err.stage == BootstrapStage.INSTALL_CREDENTIALS
    assert str(err).startswith("unable to configure credentials: ")
    assert err.output == "lost connection"
    assert len(executor.copies) == 2

    progress = await load_progress(str(workdir))
    assert progress is not None
    assert progress.failed_stage == BootstrapStage.INSTALL_CREDENTIALS
    assert progress.last_error == str(err)


async def test_resume_skips_completed_stages(
    settings: ClusterSettings,
    cloud: FakeCloud,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    with pytest.raises(RemoteCopyError):
        await _bootstrapper(settings, cloud, RecordingExecutor(fail_copy_at=1)).run()

    ca = CertificateAuthority(str(workdir))
    generation = await ca.root_generation()
    openssl_calls = len(fake_openssl.calls)

    retry = RecordingExecutor()
    result = await _bootstrapper(settings, cloud, retry).run()

    assert len(cloud.create_requests) == 1
    assert len(cloud.imports) == 1
    assert await ca.root_generation() == generation
    assert len(fake_openssl.calls) == openssl_calls
    assert len(retry.copies) == 5
    assert result.master_address == "203.0.113.10"

    # A finished run has nothing left to do.
    again = RecordingExecutor()
    await _bootstrapper(settings, cloud, again).run()
    assert again.runs == [] and again.copies == []
    assert len(cloud.create_requests) == 1


async def test_no_resume_reuses_root(
    settings: ClusterSettings,
    cloud: FakeCloud,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    await _bootstrapper(settings, cloud, executor).run()
    generation = await CertificateAuthority(str(workdir)).root_generation()

    await _bootstrapper(settings, cloud, RecordingExecutor()).run(resume=False)

    assert await CertificateAuthority(str(workdir)).root_generation() == generation
    assert len(cloud.create_requests) == 2
    assert fake_openssl.subcommands().count("x509") == 6


async def test_missing_address(
    settings: ClusterSettings,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
) -> None:
    cloud = FakeCloud(instances=[make_instance(address=None)])

    with pytest.raises(MissingAddressError) as exc_info:
        await _bootstrapper(settings, cloud, executor).run()

    assert exc_info.value.stage == BootstrapStage.EXTRACT_ADDRESS
    assert str(exc_info.value).startswith("could not find master address: ")
    assert executor.runs == []


async def test_identity_failure_stops_before_ca(
    settings: ClusterSettings,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
) -> None:
    cloud = FakeCloud()
    cloud.fail_import = True

    with pytest.raises(KeyRegistrationError) as exc_info:
        await _bootstrapper(settings, cloud, executor).run()

    assert exc_info.value.stage == BootstrapStage.ENSURE_IDENTITY
    assert str(exc_info.value).startswith("creating ssh key: ")
    assert fake_openssl.calls == []
    assert cloud.create_requests == []


async def test_openssl_failure_names_the_certificate(
    settings: ClusterSettings,
    cloud: FakeCloud,
    executor: RecordingExecutor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake = FakeOpenSSL(fail_on="x509")
    monkeypatch.setattr("kubestrap.ca.authority.run_command", fake)

    with pytest.raises(ExternalToolError) as exc_info:
        await _bootstrapper(settings, cloud, executor).run()

    assert str(exc_info.value).startswith("could not create worker key pair: ")
    assert cloud.create_requests == []


async def test_force_root_on_resume_redoes_certificates(
    settings: ClusterSettings,
    cloud: FakeCloud,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    with pytest.raises(RemoteCopyError):
        await _bootstrapper(settings, cloud, RecordingExecutor(fail_copy_at=1)).run()
    ca = CertificateAuthority(str(workdir))
    old_generation = await ca.root_generation()

    retry = RecordingExecutor()
    result = await _bootstrapper(settings, cloud, retry).run(force_root=True)

    assert await ca.root_generation() != old_generation
    assert await ca.stale_leaves() == []
    assert len(cloud.create_requests) == 1
    assert len(retry.copies) == 5
    assert result.master_address == "203.0.113.10"
    assert "203.0.113.10" in (workdir / "openssl.cnf").read_text()


async def test_force_root_after_finished_run_reinstalls(
    settings: ClusterSettings,
    cloud: FakeCloud,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    await _bootstrapper(settings, cloud, executor).run()
    old_generation = await CertificateAuthority(str(workdir)).root_generation()

    again = RecordingExecutor()
    await _bootstrapper(settings, cloud, again).run(force_root=True)

    assert await CertificateAuthority(str(workdir)).root_generation() != old_generation
    assert len(again.copies) == 5
    assert len(cloud.create_requests) == 1


async def test_resume_refuses_changed_instance_settings(
    settings: ClusterSettings,
    cloud: FakeCloud,
    fake_openssl: FakeOpenSSL,
    workdir: Path,
) -> None:
    with pytest.raises(RemoteCopyError):
        await _bootstrapper(settings, cloud, RecordingExecutor(fail_copy_at=1)).run()

    bigger = settings.model_copy(update={"size": "8gb"})
    retry = RecordingExecutor()
    with pytest.raises(BootstrapError) as exc_info:
        await _bootstrapper(bigger, cloud, retry).run()

    assert "size: '4gb' -> '8gb'" in str(exc_info.value)
    assert "--no-resume" in str(exc_info.value)
    assert retry.copies == []
    assert len(cloud.create_requests) == 1


async def test_settings_may_change_before_master_exists(
    settings: ClusterSettings,
    executor: RecordingExecutor,
    fake_openssl: FakeOpenSSL,
) -> None:
    broken = FakeCloud()
    broken.fail_create = True
    with pytest.raises(CloudAPIError):
        await _bootstrapper(settings, broken, RecordingExecutor()).run()

    cloud = FakeCloud()
    moved = settings.model_copy(update={"region": "sfo2"})
    result = await _bootstrapper(moved, cloud, executor).run()

    assert result.instance_name == "tcluster-master-sfo2"
    assert cloud.create_requests[0].region == "sfo2"
