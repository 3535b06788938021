"""
kubestrap/utils/cloud_init.py

Renders the master's first-boot cloud-config. The document is consumed by the
node's init system as-is, so the template below must stay byte-for-byte stable;
the overlay network CIDR is its only variable. `$public_ipv4` is substituted by
the node itself at boot, not by us.
"""

from __future__ import annotations

import ipaddress
from contextlib import asynccontextmanager
from string import Template
from typing import AsyncGenerator

import yaml

from kubestrap.utils.ephemeral_file import ephemeral_file

DEFAULT_OVERLAY_CIDR = "10.3.0.0/16"

MASTER_CLOUD_CONFIG = Template(
    "#cloud-config\n"
    "\n"
    "coreos:\n"
    "  etcd2:\n"
    "    advertise-client-urls: https://$public_ipv4:2379,https://$public_ipv4:4001\n"
    "    listen-client-urls: https://0.0.0.0:2379,https://0.0.0.0:4001\n"
    "  flannel:\n"
    "    etcd_cafile: /home/core/ssl/ca.pem\n"
    "    etcd_certfile: /home/core/ssl/admin.pem\n"
    "    etcd_keyfile: /home/core/ssl/admin-key.pem\n"
    "  locksmith:\n"
    "    etcd_cafile: /home/core/ssl/ca.pem\n"
    "    etcd_certfile: /home/core/ssl/client.pem\n"
    "    etcd_keyfile: /home/core/ssl/client-key.pem\n"
    "  units:\n"
    "    - name: etcd2.service\n"
    "      command: start\n"
    "    - name: flanneld.service\n"
    "      drop-ins: \n"
    "      - name: 50-network-config.conf\n"
    "        content: |\n"
    "          [Service]\n"
    "          ExecStartPre=/usr/bin/etcdctl set /coreos.com/network/config"
    " '{ \"Network\": \"${overlay_cidr}\" }'\n"
    "      command: start\n"
    "write_files:\n"
    "  - path: /run/systemd/system/etcd2.service.d/30-certificates.conf\n"
    "    permissions: 0644\n"
    "    content: |\n"
    "      [Service]\n"
    "      # client environment variables\n"
    "      Environment=ETCD_CA_FILE=/home/core/ssl/ca.pem\n"
    "      Environment=ETCD_CERT_FILE=/home/core/ssl/apiserver.pem\n"
    "      Environment=ETCD_KEY_FILE=/home/core/ssl/apiserver-key.pem\n"
    "\n"
)


def build_cloud_config(overlay_cidr: str = DEFAULT_OVERLAY_CIDR) -> str:
    """
    Return the master cloud-config document for the given overlay network.

    Raises:
        ValueError: If `overlay_cidr` is not an IPv4 network, or the rendered
            document does not parse as YAML.
    """
    ipaddress.IPv4Network(overlay_cidr, strict=True)
    rendered = MASTER_CLOUD_CONFIG.safe_substitute(overlay_cidr=overlay_cidr)

    try:
        parsed = yaml.safe_load(rendered)
    except yaml.YAMLError as exc:
        raise ValueError(f"Rendered cloud-config is not valid YAML: {exc}") from exc
    if not isinstance(parsed, dict) or "coreos" not in parsed:
        raise ValueError("Rendered cloud-config is missing its 'coreos' section.")

    return rendered


@asynccontextmanager
async def render_cloud_init(
    overlay_cidr: str = DEFAULT_OVERLAY_CIDR,
) -> AsyncGenerator[str, None]:
    """
    Materialize the cloud-config into a temporary file and yield its path.
    The file is removed when the block exits, whether it succeeded or raised.
    """
    document = build_cloud_config(overlay_cidr)
    async with ephemeral_file("cloud-config.yaml", content=document, prefix="mcc-") as path:
        yield path
