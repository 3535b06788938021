"""
kubestrap/models/settings.py

ClusterSettings: every knob of a bootstrap run in one explicit object, passed to
the bootstrapper rather than read from module-level constants. Each field maps
to an environment variable prefixed with `KUBESTRAP_` (e.g. KUBESTRAP_REGION)
and can also be loaded from a YAML file.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Any, Literal, Optional

import yaml
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kubestrap.models.ssh import HostKeyPolicy

_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


class ClusterSettings(BaseSettings):
    """
    Attributes:
        name: Cluster name; also names the registered SSH key.
        region: Cloud region slug.
        image: Image slug for the master.
        size: Size slug for the master.
        overlay_cidr: Flat overlay network handed to flannel in cloud-init.
        service_ip: Cluster IP of the API service, baked into the API server cert.
        workdir: Local directory holding keys, certificates and progress.
        ssh_user: Login user on the master image.
        stage_dir: Remote directory credentials are copied into.
        worker_name: Name of the worker certificate template.
        worker_address: IP SAN of the worker certificate template.
        api_server_placeholder: Address used in the API server cert before (or
            in addition to) the real master address.
        defer_api_server_certificate: Issue the API server cert after the
            master address is known instead of with the placeholder only.
        host_key_policy: Trust level applied to the master's SSH host key.
        ssh_attempts: Total attempts for remote commands.
        ssh_retry_delay: Seconds between remote command attempts.
        verbose: Surface certificate tool output in the logs.
        cloud_backend: "api" (REST) or "doctl" (CLI).
        digitalocean_token: API token for the "api" backend.
        api_url: Base URL of the cloud API.
        instance_poll_interval: Seconds between status polls while waiting.
        instance_poll_attempts: Status polls before giving up on "active".
    """

    model_config = SettingsConfigDict(env_prefix="KUBESTRAP_")

    name: str = "tcluster"
    region: str = "nyc1"
    image: str = "coreos-alpha"
    size: str = "4gb"
    overlay_cidr: str = "10.3.0.0/16"
    service_ip: str = "10.3.0.1"
    workdir: str = "/tmp/kubestrap"
    ssh_user: str = "core"
    stage_dir: str = "/home/core/ssl"
    worker_name: str = "worker.example.com"
    worker_address: str = "172.17.0.5"
    api_server_placeholder: str = "127.0.0.1"
    defer_api_server_certificate: bool = True
    host_key_policy: HostKeyPolicy = HostKeyPolicy.accept_any
    ssh_attempts: int = Field(default=5, ge=1)
    ssh_retry_delay: float = Field(default=15.0, ge=0.0)
    verbose: bool = False
    cloud_backend: Literal["api", "doctl"] = "api"
    digitalocean_token: Optional[SecretStr] = None
    api_url: str = "https://api.digitalocean.com"
    instance_poll_interval: float = Field(default=5.0, ge=0.0)
    instance_poll_attempts: int = Field(default=120, ge=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, val: str) -> str:
        if not _NAME_RE.match(val):
            raise ValueError(
                "name must be lowercase letters, digits and '-', "
                "starting and ending with a letter or digit"
            )
        return val

    @field_validator("overlay_cidr")
    @classmethod
    def validate_overlay_cidr(cls, val: str) -> str:
        ipaddress.IPv4Network(val, strict=True)
        return val

    @field_validator("service_ip", "worker_address", "api_server_placeholder")
    @classmethod
    def validate_ipv4(cls, val: str) -> str:
        ipaddress.IPv4Address(val)
        return val

    @property
    def instance_name(self) -> str:
        return f"{self.name}-master-{self.region}"

    @classmethod
    def from_yaml(cls, yaml_str: str, **overrides: Any) -> ClusterSettings:
        """
        Build settings from a YAML mapping. Keyword overrides win over the file;
        keys set in neither fall back to the environment, then to defaults.
        """
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValueError("cluster settings YAML must be a mapping")
        data.update(overrides)
        return cls(**data)
