from __future__ import annotations
"""Persisted engine settings."""

from dataclasses import asdict, dataclass, fields
import json
import logging
from pathlib import Path

MIB = 1024 * 1024

LOGGER = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    """Tunables for transfers, listings and presigned URLs."""

    part_size: int = 5 * MIB
    multipart_threshold: int = 8 * MIB
    part_concurrency: int = 4
    page_size: int = 1000
    presign_expiry: int = 3600
    download_segment_size: int = 5 * MIB
    range_download_threshold: int = 100 * MIB


class SettingsStorage:
    """JSON-backed persistence for :class:`EngineSettings`."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".pys3engine_settings.json"
        self._path = Path(storage_path)

    def load(self) -> EngineSettings:
        if not self._path.exists():
            return EngineSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Could not read settings from %s: %s", self._path, exc)
            return EngineSettings()
        if not isinstance(data, dict):
            return EngineSettings()
        values = {}
        for item in fields(EngineSettings):
            default = item.default
            try:
                value = int(data.get(item.name, default))
            except (TypeError, ValueError):
                value = default
            values[item.name] = value if value > 0 else default
        return EngineSettings(**values)

    def save(self, settings: EngineSettings) -> None:
        payload = {name: max(int(value), 1) for name, value in asdict(settings).items()}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            # Persist best-effort; ignore filesystem issues.
            LOGGER.warning("Could not write settings to %s: %s", self._path, exc)
