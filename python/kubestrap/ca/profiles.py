"""
kubestrap/ca/profiles.py

openssl extension profiles for the API server and worker certificates. Every
substituted value is checked to be an IP address before rendering, so a
malformed address fails here rather than inside openssl.
"""

from __future__ import annotations

import ipaddress
import re
from typing import List, Sequence

_WORKER_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9.-]*[A-Za-z0-9])?$")

_PROFILE_HEAD = (
    "[req]\n"
    "req_extensions = v3_req\n"
    "distinguished_name = req_distinguished_name\n"
    "[req_distinguished_name]\n"
)

_V3_REQ_BODY = (
    "basicConstraints = CA:FALSE\n"
    "keyUsage = nonRepudiation, digitalSignature, keyEncipherment\n"
    "subjectAltName = @alt_names\n"
    "[alt_names]\n"
)


def _check_ip(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError as exc:
        raise ValueError(f"{value!r} is not a valid IP address") from exc


def check_worker_name(worker_name: str) -> str:
    """Worker names become file names, so keep them to DNS-ish characters."""
    if not _WORKER_NAME_RE.match(worker_name):
        raise ValueError(f"{worker_name!r} is not a valid worker name")
    return worker_name


def api_server_profile(service_ip: str, master_addresses: Sequence[str]) -> str:
    """
    Render the API server profile: DNS SANs `kubernetes` and
    `kubernetes.default`, then the service IP, then each master address once.

    Raises:
        ValueError: If no master address is given or any address is invalid.
    """
    if not master_addresses:
        raise ValueError("At least one master address is required.")

    ips: List[str] = [_check_ip(service_ip)]
    for addr in master_addresses:
        checked = _check_ip(addr)
        if checked not in ips:
            ips.append(checked)

    alt_names = "DNS.1 = kubernetes\nDNS.2 = kubernetes.default\n" + "".join(
        f"IP.{idx} = {ip}\n" for idx, ip in enumerate(ips, start=1)
    )
    return _PROFILE_HEAD + "[ v3_req ]\n" + _V3_REQ_BODY + alt_names


def worker_profile(worker_address: str) -> str:
    """Render the worker profile with the worker's address as its only SAN."""
    return (
        _PROFILE_HEAD
        + "[v3_req]\n"
        + _V3_REQ_BODY
        + f"IP.1 = {_check_ip(worker_address)}\n"
    )
