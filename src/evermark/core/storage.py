"""Permanent storage for season folders.

Each season gets a folder with fixed subfolders and a ``manifest.json``
describing it. Preparing and finalizing are idempotent: preparing an existing
folder returns the same reference, finalizing twice keeps the first
``finalized_at``. A finalized manifest is never reopened.
"""

from __future__ import annotations

import asyncio
import json
import logging
import pathlib
from datetime import UTC, datetime
from typing import Any, Protocol

from evermark.core.season_clock import folder_path
from evermark.models.season import SeasonInfo

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
SEASON_SUBFOLDERS: tuple[str, ...] = ("evermarks", "votes", "leaderboard", "rewards")


class SeasonStorage(Protocol):
    async def prepare_folder(self, info: SeasonInfo) -> str: ...

    async def finalize_folder(self, season_number: int) -> None: ...

    def is_prepared(self, season_number: int) -> bool: ...

    def is_finalized(self, season_number: int) -> bool: ...


class LocalSeasonStorage:
    """Filesystem-backed season storage rooted at *root*."""

    def __init__(self, root: str | pathlib.Path) -> None:
        self.root = pathlib.Path(root)

    def _folder(self, season_number: int) -> pathlib.Path:
        return self.root / f"season-{season_number:02d}"

    def _read_manifest(self, season_number: int) -> dict[str, Any] | None:
        path = self._folder(season_number) / MANIFEST_NAME
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def _write_manifest(self, season_number: int, manifest: dict[str, Any]) -> None:
        path = self._folder(season_number) / MANIFEST_NAME
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(manifest, indent=2, sort_keys=True))
        tmp.replace(path)

    def _prepare(self, info: SeasonInfo) -> str:
        folder = self.root / folder_path(info)
        for sub in SEASON_SUBFOLDERS:
            (folder / sub).mkdir(parents=True, exist_ok=True)
        if self._read_manifest(info.number) is None:
            self._write_manifest(
                info.number,
                {
                    "season": info.model_dump(mode="json"),
                    "status": "active",
                    "created": datetime.now(UTC).isoformat(),
                    "finalized_at": None,
                },
            )
            logger.info("season_folder_created folder=%s", folder)
        return str(folder)

    def _finalize(self, season_number: int) -> None:
        folder = self._folder(season_number)
        for sub in SEASON_SUBFOLDERS:
            (folder / sub).mkdir(parents=True, exist_ok=True)
        manifest = self._read_manifest(season_number) or {
            "season": {"number": season_number},
            "status": "active",
            "created": datetime.now(UTC).isoformat(),
        }
        if manifest.get("status") == "finalized":
            return
        manifest["status"] = "finalized"
        manifest["finalized_at"] = datetime.now(UTC).isoformat()
        self._write_manifest(season_number, manifest)
        logger.info("season_folder_finalized season=%d", season_number)

    async def prepare_folder(self, info: SeasonInfo) -> str:
        """Create the season folder tree and manifest if absent. Returns the folder path."""
        return await asyncio.to_thread(self._prepare, info)

    async def finalize_folder(self, season_number: int) -> None:
        """Mark the season's manifest finalized. No-op when already finalized."""
        await asyncio.to_thread(self._finalize, season_number)

    def is_prepared(self, season_number: int) -> bool:
        return (self._folder(season_number) / MANIFEST_NAME).exists()

    def is_finalized(self, season_number: int) -> bool:
        manifest = self._read_manifest(season_number)
        return manifest is not None and manifest.get("status") == "finalized"
