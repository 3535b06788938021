"""
kubestrap/models/cloud.py

Pydantic models for the slice of the cloud provider API we consume:
 - SSHKeyRecord: an entry in the provider's SSH key registry
 - Instance: a compute instance (droplet) and its networks
 - InstanceCreateRequest: the parameters of a single create call
"""

from __future__ import annotations

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class SSHKeyRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: str = ""
    fingerprint: str
    public_key: Optional[str] = None


class NetworkV4(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ip_address: str
    type: str = "public"


class Networks(BaseModel):
    model_config = ConfigDict(extra="ignore")

    v4: List[NetworkV4] = Field(default_factory=list)


class Instance(BaseModel):
    """
    A created compute instance. The only attribute the bootstrap depends on is
    its first IPv4 address; the rest is kept for reporting.
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: str
    status: str = "new"
    networks: Networks = Field(default_factory=Networks)

    def first_ipv4(self) -> Optional[str]:
        """Return the first IPv4 address, or None if the instance has none."""
        if not self.networks.v4:
            return None
        return self.networks.v4[0].ip_address


class InstanceCreateRequest(BaseModel):
    """
    Attributes:
        name: Instance name, `<cluster>-master-<region>`.
        image: Image slug.
        region: Region slug.
        size: Size slug.
        ssh_key_fingerprints: Keys authorized for the initial login.
        user_data_path: Path to a cloud-init document on local disk.
        wait: Block until the instance reports it is running.
    """

    name: str
    image: str
    region: str
    size: str
    ssh_key_fingerprints: List[str]
    user_data_path: str
    wait: bool = True
