from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from kubestrap.models.settings import ClusterSettings
from kubestrap.models.ssh import HostKeyPolicy


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in list(os.environ):
        if var.startswith("KUBESTRAP_"):
            monkeypatch.delenv(var)


def test_defaults() -> None:
    settings = ClusterSettings()

    assert settings.instance_name == "tcluster-master-nyc1"
    assert settings.image == "coreos-alpha"
    assert settings.size == "4gb"
    assert settings.overlay_cidr == "10.3.0.0/16"
    assert settings.service_ip == "10.3.0.1"
    assert settings.ssh_attempts == 5
    assert settings.ssh_retry_delay == 15.0
    assert settings.host_key_policy == HostKeyPolicy.accept_any
    assert settings.defer_api_server_certificate is True
    assert settings.digitalocean_token is None


def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBESTRAP_REGION", "sfo2")
    monkeypatch.setenv("KUBESTRAP_HOST_KEY_POLICY", "strict")
    monkeypatch.setenv("KUBESTRAP_DIGITALOCEAN_TOKEN", "dop_v1_secret")

    settings = ClusterSettings()

    assert settings.instance_name == "tcluster-master-sfo2"
    assert settings.host_key_policy == HostKeyPolicy.strict
    assert settings.digitalocean_token is not None
    assert settings.digitalocean_token.get_secret_value() == "dop_v1_secret"
    assert "dop_v1_secret" not in repr(settings)


def test_from_yaml_with_overrides() -> None:
    doc = """
name: prod
region: ams3
overlay_cidr: 10.244.0.0/16
ssh_attempts: 3
"""
    settings = ClusterSettings.from_yaml(doc, region="lon1")

    assert settings.name == "prod"
    assert settings.region == "lon1"
    assert settings.overlay_cidr == "10.244.0.0/16"
    assert settings.ssh_attempts == 3


def test_from_yaml_empty_document() -> None:
    assert ClusterSettings.from_yaml("").name == "tcluster"


def test_from_yaml_rejects_non_mapping() -> None:
    with pytest.raises(ValueError):
        ClusterSettings.from_yaml("- a\n- b\n")


@pytest.mark.parametrize(
    "field, value",
    [
        ("name", "Bad_Name"),
        ("name", "-edge"),
        ("overlay_cidr", "10.3.0.1/16"),
        ("service_ip", "not-an-ip"),
        ("worker_address", "::1"),
        ("ssh_attempts", 0),
        ("cloud_backend", "terraform"),
    ],
)
def test_rejects_invalid_values(field: str, value: object) -> None:
    with pytest.raises(ValidationError):
        ClusterSettings(**{field: value})
