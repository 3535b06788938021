from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeCloud, FakeOpenSSL, RecordingExecutor
from kubestrap.models.settings import ClusterSettings


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def fake_openssl(monkeypatch: pytest.MonkeyPatch) -> FakeOpenSSL:
    fake = FakeOpenSSL()
    monkeypatch.setattr("kubestrap.ca.authority.run_command", fake)
    return fake


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def settings(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> ClusterSettings:
    for var in ("KUBESTRAP_NAME", "KUBESTRAP_REGION", "KUBESTRAP_WORKDIR"):
        monkeypatch.delenv(var, raising=False)
    return ClusterSettings(
        name="tcluster",
        region="nyc1",
        workdir=str(workdir),
        ssh_retry_delay=0.0,
    )
