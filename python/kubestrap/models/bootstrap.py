"""
kubestrap/models/bootstrap.py

Defines the bootstrap state machine's vocabulary:
 - BootstrapStage: the strictly sequential stages of a cluster bootstrap
 - BootstrapProgress: the persisted "how far did we get" record (bootstrap-state.json)
 - BootstrapResult: what a successful run hands back to the caller
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional
from pydantic import BaseModel, Field

from kubestrap.models.cloud import Instance


class BootstrapStage(str, Enum):
    ENSURE_IDENTITY = "ensure_identity"
    INIT_CA = "init_ca"
    RENDER_CLOUD_INIT = "render_cloud_init"
    CREATE_INSTANCE = "create_instance"
    EXTRACT_ADDRESS = "extract_address"
    ISSUE_API_SERVER_CERTIFICATE = "issue_api_server_certificate"
    INSTALL_CREDENTIALS = "install_credentials"


STAGE_ORDER: List[BootstrapStage] = list(BootstrapStage)


class BootstrapProgress(BaseModel):
    """
    Recorded after every completed stage so a retry can resume from the
    failure point instead of re-running non-idempotent steps.

    Attributes:
        cluster_name: Cluster this record belongs to.
        completed: Stages completed so far, in order.
        fingerprint: SSH key fingerprint (after ENSURE_IDENTITY).
        instance_settings: Settings that shape the master (name, image,
            region, size, overlay network) as of the run that recorded this.
        instance: The master instance record (after CREATE_INSTANCE).
        master_address: First IPv4 of the master (after EXTRACT_ADDRESS).
        installed_files: Remote paths written by INSTALL_CREDENTIALS.
        failed_stage: Stage of the most recent failure, if any.
        last_error: Rendered message of the most recent failure, if any.
    """

    cluster_name: str
    completed: List[BootstrapStage] = Field(default_factory=list)
    fingerprint: Optional[str] = None
    instance_settings: Dict[str, str] = Field(default_factory=dict)
    instance: Optional[Instance] = None
    master_address: Optional[str] = None
    installed_files: List[str] = Field(default_factory=list)
    failed_stage: Optional[BootstrapStage] = None
    last_error: Optional[str] = None

    @property
    def last_completed(self) -> Optional[BootstrapStage]:
        return self.completed[-1] if self.completed else None

    def is_done(self, stage: BootstrapStage) -> bool:
        return stage in self.completed

    def mark_done(self, stage: BootstrapStage) -> None:
        if stage not in self.completed:
            self.completed.append(stage)
        if self.failed_stage == stage:
            self.failed_stage = None
            self.last_error = None

    def reopen(self, stages: Iterable[BootstrapStage]) -> None:
        """Forget that `stages` completed so the next run repeats them."""
        reopened = set(stages)
        self.completed = [stage for stage in self.completed if stage not in reopened]


class BootstrapResult(BaseModel):
    fingerprint: str
    instance_name: str
    master_address: str
    installed_files: List[str] = Field(default_factory=list)
