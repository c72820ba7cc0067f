"""Artifact publication and manifest generation.

This module handles:
- Computing checksums and writing sha256sum-style checksum files
- Verifying an artifact against its checksum file
- Restoring ownership to the user behind sudo
- Moving artifacts into the output directory
- Generating build manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from vmimagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

CHECKSUM_SUFFIX = ".SHA256"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 1024 * 1024  # 1MB


class ArtifactError(Exception):
    """Raised when an artifact is missing or fails verification."""

    def __init__(self, message: str, code: str = "artifact_error") -> None:
        super().__init__(message)
        self.code = code


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def checksum_path_for(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + CHECKSUM_SUFFIX)


def write_checksum(artifact: Path) -> tuple[Path, str]:
    """Write <artifact>.SHA256 next to artifact in sha256sum format.

    Returns:
        Checksum file path and hex digest.
    """
    if not artifact.is_file():
        raise ArtifactError(f"Artifact not found: {artifact}", code="artifact_missing")
    digest = compute_file_hash(artifact)
    checksum_file = checksum_path_for(artifact)
    checksum_file.write_text(f"{digest}  {artifact.name}\n", encoding="utf-8")
    return checksum_file, digest


def read_checksum(checksum_file: Path) -> tuple[str, str]:
    """Parse a one-line sha256sum file into (digest, filename)."""
    line = checksum_file.read_text(encoding="utf-8").strip()
    digest, _, name = line.partition(" ")
    return digest, name.lstrip(" *")


def verify_checksum(artifact: Path) -> bool:
    """Re-hash artifact and compare it to its sibling checksum file.

    Raises:
        ArtifactError: If either file is missing.
    """
    checksum_file = checksum_path_for(artifact)
    if not artifact.is_file():
        raise ArtifactError(f"Artifact not found: {artifact}", code="artifact_missing")
    if not checksum_file.is_file():
        raise ArtifactError(
            f"Checksum file not found: {checksum_file}", code="checksum_missing"
        )
    expected, name = read_checksum(checksum_file)
    if name and name != artifact.name:
        logger.warning("%s names %s, not %s", checksum_file.name, name, artifact.name)
        return False
    return compute_file_hash(artifact) == expected


def restore_ownership(paths: list[Path], owner: tuple[int, int] | None) -> None:
    """chown paths to owner when the invoking user is known."""
    if owner is None:
        return
    for path in paths:
        os.chown(path, *owner)


def publish_artifact(
    artifact: Path,
    output_dir: Path,
    owner: tuple[int, int] | None = None,
    recipe: str | None = None,
) -> ArtifactInfo:
    """Checksum artifact, restore ownership and move both files to output_dir.

    Args:
        artifact: Final image in the working directory.
        output_dir: Destination directory.
        owner: uid/gid to hand the files back to.
        recipe: Name of the recipe that produced the artifact.

    Returns:
        ArtifactInfo describing the published files.
    """
    checksum_file, digest = write_checksum(artifact)
    size_bytes = artifact.stat().st_size
    restore_ownership([artifact, checksum_file], owner)

    output_dir.mkdir(parents=True, exist_ok=True)
    dest = output_dir / artifact.name
    dest_checksum = output_dir / checksum_file.name
    # An artifact in output_dir always has its checksum beside it
    shutil.move(str(checksum_file), dest_checksum)
    try:
        shutil.move(str(artifact), dest)
    except OSError:
        dest_checksum.unlink(missing_ok=True)
        raise

    logger.info("Published %s (%d bytes, sha256 %s)", dest, size_bytes, digest)
    return ArtifactInfo(
        filename=dest.name,
        path=dest,
        checksum_path=dest_checksum,
        size_bytes=size_bytes,
        sha256=digest,
        recipe=recipe,
    )


def generate_manifest(
    artifacts: list[ArtifactInfo],
    build_version: str,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    The manifest contains:
    - List of artifacts with metadata
    - The build version
    - Timestamps
    - Optional extra metadata

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    entries = []
    for artifact in artifacts:
        entry = asdict(artifact)
        entry["path"] = str(artifact.path)
        entry["checksum_path"] = str(artifact.checksum_path)
        entries.append(entry)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "build_version": build_version,
        "generated_at": now.isoformat(),
        "artifacts": entries,
    }
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
    }
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "ArtifactError",
    "checksum_path_for",
    "compute_file_hash",
    "generate_manifest",
    "publish_artifact",
    "read_checksum",
    "restore_ownership",
    "verify_checksum",
    "write_checksum",
    "write_manifest",
]
