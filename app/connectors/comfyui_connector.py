"""
app/connectors/comfyui_connector.py

ComfyUI connector for workflow graph files on the local filesystem.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from app.config import ComfyUISettings
from app.connectors.base import parse_page_number
from ingestion.base import ConnectorPage, SourceConnector
from ingestion.errors import TransientUpstreamError

logger = logging.getLogger(__name__)


class ComfyUIWorkflowConnector(SourceConnector):
    """
    Discovers workflow files under the configured base directories and pages
    through them by offset. Missing directories are skipped.

    Each raw record carries the file text; parsing happens in the mapper so a
    malformed file counts as one record error instead of failing the page.
    """

    def __init__(self, *, settings: ComfyUISettings) -> None:
        self.source = "comfyui"
        self._settings = settings

    def first_page_token(self) -> str | None:
        return "0"

    def describe(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "base_directories": list(self._settings.base_directories),
            "include_patterns": list(self._settings.include_patterns),
            "exclude_patterns": list(self._settings.exclude_patterns),
            "page_size": self._settings.page_size,
        }

    def discover_files(self) -> list[tuple[Path, Path]]:
        """
        Return ``(base_directory, file)`` pairs, sorted and de-duplicated.
        """

        found: dict[Path, Path] = {}
        excludes = [pattern.lower() for pattern in self._settings.exclude_patterns]
        for raw_base in self._settings.base_directories:
            base = Path(raw_base).expanduser()
            if not base.is_dir():
                logger.warning("ComfyUI base directory missing path=%s", base)
                continue
            for pattern in self._settings.include_patterns:
                for path in base.rglob(pattern):
                    if not path.is_file():
                        continue
                    lowered = str(path).lower()
                    if any(exclude in lowered for exclude in excludes):
                        continue
                    found.setdefault(path.resolve(), base.resolve())
        return sorted(((base, path) for path, base in found.items()), key=lambda pair: str(pair[1]))

    def fetch_page(
        self,
        page_token: str | None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectorPage:
        offset = parse_page_number(page_token, default=0)
        try:
            files = self.discover_files()
        except OSError as exc:
            raise TransientUpstreamError(f"comfyui: workflow discovery failed: {exc}") from exc

        window = files[offset : offset + self._settings.page_size]
        records = [self._read_workflow(base, path) for base, path in window]
        next_offset = offset + len(window)
        is_last_page = next_offset >= len(files)

        logger.info(
            "Discovered ComfyUI workflows offset=%s count=%s total=%s",
            offset,
            len(records),
            len(files),
        )
        return ConnectorPage(
            records=records,
            next_page_token=None if is_last_page else str(next_offset),
            is_last_page=is_last_page,
        )

    @staticmethod
    def _read_workflow(base: Path, path: Path) -> dict[str, Any]:
        record: dict[str, Any] = {
            "path": str(path),
            "relative_path": path.relative_to(base).as_posix(),
            "file_name": path.name,
            "content": None,
            "read_error": None,
            "modified_at": None,
        }
        try:
            stat = path.stat()
            record["modified_at"] = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
            record["size_bytes"] = stat.st_size
            record["content"] = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            record["read_error"] = f"{type(exc).__name__}: {exc}"
        return record
