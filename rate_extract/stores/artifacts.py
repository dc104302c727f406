"""Durable JSON artifact storage on the local filesystem."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class UnsafeArtifactNameError(ValueError):
    """The requested file name could escape the job's directory."""


@dataclass(frozen=True)
class ArtifactInfo:
    """Metadata about one file in a job's output directory."""

    name: str
    size: int
    created_at: datetime
    modified_at: datetime


def _check_name(file_name: str) -> None:
    if (
        not file_name
        or file_name in {".", ".."}
        or "/" in file_name
        or "\\" in file_name
        or "\x00" in file_name
        or ".." in file_name
    ):
        raise UnsafeArtifactNameError(f"Invalid artifact name: {file_name!r}")


class LocalArtifactStore:
    """Writes and reads a job's artifacts under its output directory.

    Writes go to a temporary sibling first and are moved into place
    with ``os.replace`` so readers never observe a partial file.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def job_directory(self, tenant_id: str, contract_id: str, stamp: str) -> Path:
        """Output directory for one run: ``root/tenant/contract/stamp``."""
        for part in (tenant_id, contract_id, stamp):
            _check_name(part)
        return self.root / tenant_id / contract_id / stamp

    def ensure_dir(self, directory: str | Path) -> Path:
        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write_json(self, directory: str | Path, file_name: str, payload: Any) -> Path:
        """Write *payload* as indented JSON to ``directory/file_name``."""
        _check_name(file_name)
        target = self.ensure_dir(directory) / file_name
        tmp = target.with_name(f".{file_name}.tmp")
        tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, target)
        logger.debug("Wrote artifact %s", target)
        return target

    def resolve(self, directory: str | Path, file_name: str) -> Path | None:
        """Return the path of an existing artifact, or ``None``.

        Raises:
            UnsafeArtifactNameError: If *file_name* contains a path
                separator or a parent reference.
        """
        _check_name(file_name)
        base = Path(directory).resolve()
        path = (base / file_name).resolve()
        if path.parent != base or not path.is_file():
            return None
        return path

    def read_json(self, directory: str | Path, file_name: str) -> Any:
        path = self.resolve(directory, file_name)
        if path is None:
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def list_artifacts(self, directory: str | Path) -> list[ArtifactInfo]:
        """Artifacts in *directory*, sorted by name; ``[]`` if it is absent."""
        base = Path(directory)
        if not base.is_dir():
            return []
        infos: list[ArtifactInfo] = []
        for entry in sorted(base.iterdir(), key=lambda p: p.name):
            if not entry.is_file() or entry.name.startswith("."):
                continue
            stat = entry.stat()
            created = getattr(stat, "st_birthtime", stat.st_ctime)
            infos.append(
                ArtifactInfo(
                    name=entry.name,
                    size=stat.st_size,
                    created_at=datetime.fromtimestamp(created, UTC),
                    modified_at=datetime.fromtimestamp(stat.st_mtime, UTC),
                )
            )
        return infos
