from __future__ import annotations

import os

import pytest
import yaml

from kubestrap.utils.cloud_init import build_cloud_config, render_cloud_init


def test_default_document() -> None:
    doc = build_cloud_config()

    assert doc.startswith("#cloud-config\n\ncoreos:\n")
    assert "'{ \"Network\": \"10.3.0.0/16\" }'" in doc
    # Trailing space after the key is part of the document.
    assert "      drop-ins: \n" in doc
    # Left for the node to expand at boot.
    assert "https://$public_ipv4:2379,https://$public_ipv4:4001" in doc
    assert doc.endswith("ETCD_KEY_FILE=/home/core/ssl/apiserver-key.pem\n\n")


def test_document_parses() -> None:
    parsed = yaml.safe_load(build_cloud_config())

    units = parsed["coreos"]["units"]
    assert [unit["name"] for unit in units] == ["etcd2.service", "flanneld.service"]
    assert parsed["write_files"][0]["path"] == (
        "/run/systemd/system/etcd2.service.d/30-certificates.conf"
    )


def test_custom_overlay() -> None:
    doc = build_cloud_config("10.244.0.0/16")

    assert "'{ \"Network\": \"10.244.0.0/16\" }'" in doc
    assert "10.3.0.0/16" not in doc


@pytest.mark.parametrize("cidr", ["not-a-cidr", "10.3.0.1/16", "fd00::/8"])
def test_rejects_bad_overlay(cidr: str) -> None:
    with pytest.raises(ValueError):
        build_cloud_config(cidr)


async def test_temp_file_removed_after_use() -> None:
    async with render_cloud_init() as path:
        assert os.path.basename(os.path.dirname(path)).startswith("mcc-")
        with open(path, encoding="utf-8") as fobj:
            assert fobj.read() == build_cloud_config()
        assert os.stat(path).st_mode & 0o777 == 0o600

    assert not os.path.exists(path)
    assert not os.path.exists(os.path.dirname(path))


async def test_temp_file_removed_on_error() -> None:
    seen = []
    with pytest.raises(RuntimeError):
        async with render_cloud_init() as path:
            seen.append(path)
            raise RuntimeError("create failed")

    assert not os.path.exists(seen[0])
