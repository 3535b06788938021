# models/ssh.py

from __future__ import annotations

from enum import Enum
from pydantic import BaseModel, Field, field_validator


class HostKeyPolicy(str, Enum):
    """
    How much we trust a remote host key on connect.

    accept_any: never verify (freshly created hosts have no known key yet).
    trust_on_first_use: record the key on first contact, verify it afterwards.
    strict: only connect to hosts already present in known_hosts.
    """

    accept_any = "accept_any"
    trust_on_first_use = "trust_on_first_use"
    strict = "strict"


class SSHTarget(BaseModel):
    """
    A remote login identity, rendered as `user@hostname` for ssh/scp.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)

    @field_validator("user", "hostname")
    @classmethod
    def validate_non_empty(cls, val: str) -> str:
        if not val.strip() or "@" in val:
            raise ValueError("user and hostname must be non-empty and contain no '@'")
        return val

    @classmethod
    def parse(cls, host: str, port: int = 22) -> SSHTarget:
        """Build an SSHTarget from a `user@hostname` string."""
        user, sep, hostname = host.partition("@")
        if not sep:
            raise ValueError(f"Expected 'user@hostname', got {host!r}")
        return cls(user=user, hostname=hostname, port=port)

    def __str__(self) -> str:
        return f"{self.user}@{self.hostname}"


class SSHIdentity(BaseModel):
    """
    The local keypair used both to log into the master and, through its
    fingerprint, to authorize that login at instance creation.
    """

    private_key_path: str
    public_key_path: str
    fingerprint: str
