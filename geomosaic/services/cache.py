from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from ..models import TileSpec

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


class TileCache:
    """On-disk store for downloaded tiles under an output directory.

    Each tile lives at its planned relative path. A JSON sidecar holding the
    payload checksum is written last and acts as the commit marker: a tile
    without a matching sidecar is treated as absent and downloaded again.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, spec: TileSpec) -> Path:
        return self.root / spec.path

    def load(self, spec: TileSpec) -> Dict[str, Any] | None:
        """Return the stored metadata if the tile on disk matches its checksum."""

        tile_path = self.path_for(spec)
        metadata_path = self._metadata_path(tile_path)
        if not tile_path.is_file() or not metadata_path.is_file():
            return None

        metadata = self._read_metadata(metadata_path)
        expected_digest = metadata.get("sha256")
        if not expected_digest:
            return None

        content = tile_path.read_bytes()
        if len(content) != metadata.get("size") or checksum(content) != expected_digest:
            logger.info("Stored tile %s failed verification; it will be downloaded again", spec.tile_id)
            return None
        return metadata

    def store(self, spec: TileSpec, content: bytes, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Persist ``content`` atomically and commit it with a checksum sidecar.

        Returns the committed sidecar record.
        """

        tile_path = self.path_for(spec)
        tile_path.parent.mkdir(parents=True, exist_ok=True)
        metadata_path = self._metadata_path(tile_path)
        metadata_path.unlink(missing_ok=True)

        _atomic_write(tile_path, content)
        record = dict(metadata)
        record.update({"sha256": checksum(content), "size": len(content), "tile_id": spec.tile_id})
        _atomic_write(metadata_path, json.dumps(record, sort_keys=True).encode("utf-8"))
        return record

    def discard(self, spec: TileSpec) -> None:
        tile_path = self.path_for(spec)
        for path in (tile_path, self._metadata_path(tile_path), _partial_path(tile_path)):
            path.unlink(missing_ok=True)

    def _metadata_path(self, tile_path: Path) -> Path:
        return tile_path.parent / f"{tile_path.name}.json"

    def _read_metadata(self, metadata_path: Path) -> Dict[str, Any]:
        try:
            payload = json.loads(metadata_path.read_text())
        except (json.JSONDecodeError, OSError):
            return {}
        return payload if isinstance(payload, dict) else {}


def checksum(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _partial_path(path: Path) -> Path:
    return path.parent / f"{path.name}{PARTIAL_SUFFIX}"


def _atomic_write(path: Path, content: bytes) -> None:
    partial = _partial_path(path)
    partial.write_bytes(content)
    os.replace(partial, path)
