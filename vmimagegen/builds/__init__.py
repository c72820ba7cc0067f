"""Base image build, variant derivation and build orchestration."""

from vmimagegen.builds.artifacts import ArtifactError, publish_artifact, verify_checksum
from vmimagegen.builds.orchestrator import PrivilegeError, run_build

__all__ = [
    "ArtifactError",
    "PrivilegeError",
    "publish_artifact",
    "run_build",
    "verify_checksum",
]
