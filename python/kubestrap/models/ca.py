"""
kubestrap/models/ca.py

Persisted bookkeeping for the certificate authority (ca-state.json):
the current root generation and which generation each leaf was signed by.
"""

from __future__ import annotations

from typing import Dict, List
from pydantic import BaseModel, Field


class IssuedLeaf(BaseModel):
    """One issued leaf certificate and the root generation that signed it."""

    name: str
    certificate: str
    private_key: str
    generation: str


class CAState(BaseModel):
    """
    Attributes:
        generation: SHA-256 (hex) of ca.pem at the time the root was created.
        created_at: Epoch seconds of root creation.
        leaves: Leaf name => IssuedLeaf.
    """

    generation: str
    created_at: float
    leaves: Dict[str, IssuedLeaf] = Field(default_factory=dict)

    def stale_leaves(self) -> List[str]:
        return sorted(
            name for name, leaf in self.leaves.items() if leaf.generation != self.generation
        )


class LeafFiles(BaseModel):
    """Fixed file names of one leaf's (private key, CSR, certificate) triple."""

    name: str
    private_key: str
    csr: str
    certificate: str

    @classmethod
    def for_role(cls, name: str, stem: str) -> LeafFiles:
        return cls(
            name=name,
            private_key=f"{stem}-key.pem",
            csr=f"{stem}.csr",
            certificate=f"{stem}.pem",
        )
