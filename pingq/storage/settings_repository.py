"""
JSON file persistence for ``PipelineSettings``.

Only settings are persisted; notifications live in memory for the lifetime
of the process. A corrupt settings file is backed up next to itself and
replaced with defaults rather than blocking start-up.
"""

from __future__ import annotations

import json
import shutil
import time
from pathlib import Path

from pydantic import ValidationError

from pingq.config import SETTINGS_PATH
from pingq.observability.logging import get_logger
from pingq.observability.telemetry import counter, log_event
from pingq.settings import PipelineSettings

logger = get_logger(__name__)


class SettingsRepository:
    """Load/save pipeline settings as pretty-printed JSON."""

    def __init__(self, path: Path | str = SETTINGS_PATH):
        self.path = Path(path)

    def load(self) -> PipelineSettings:
        """
        Read settings from disk.

        Returns:
            Stored settings merged over defaults, or defaults if the file is missing

        Side Effects:
            - Reads the settings file
            - On an unreadable file: copies it to ``<path>.backup-<epoch-ms>`` and rewrites defaults
        """
        if not self.path.exists():
            logger.info("Settings file %s does not exist, will create on first save", self.path)
            return PipelineSettings()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("settings file must contain a JSON object")
            settings = PipelineSettings().merged(data)
        except (ValueError, ValidationError) as e:
            logger.error("Failed to parse settings file %s: %s", self.path, e)
            self._backup_corrupt()
            settings = PipelineSettings()
            self.save(settings)
            return settings

        logger.info("Loaded settings from %s", self.path)
        return settings

    def save(self, settings: PipelineSettings) -> None:
        """
        Write settings atomically (temp file + rename).

        Raises:
            OSError: If the directory or file cannot be written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        tmp_path.write_text(json.dumps(settings.model_dump(), indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
        counter("settings.saved")
        log_event("settings.saved", path=str(self.path))

    def _backup_corrupt(self) -> Path:
        backup = self.path.with_name(f"{self.path.name}.backup-{int(time.time() * 1000)}")
        shutil.copyfile(self.path, backup)
        counter("settings.corrupt_backup")
        logger.warning("Created backup of invalid settings file at %s", backup)
        return backup
