"""Profile persistence.

The profile is a small JSON document (see ProfileData). Loading is tolerant:
each top-level section is validated on its own and a section that fails
validation is reset to its default, so one bad entry never locks the user out
of the rest of the profile. Saving writes a temp file in the same directory
and moves it into place, so a crash never leaves a half-written profile.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .config import MAX_PROFILE_FILE_SIZE_BYTES
from .environments import DEFAULT_ENVIRONMENT_NAME, Environment
from .models import ProfileData, Subscription

logger = logging.getLogger(__name__)

_ENVIRONMENTS_ADAPTER = TypeAdapter(list[Environment])
_SUBSCRIPTIONS_ADAPTER = TypeAdapter(list[Subscription])


class ProfileStore:
    """Reads and writes ProfileData at a fixed path."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> ProfileData:
        """Load the profile, resetting any section that fails to deserialize.

        A missing, empty, oversized or malformed file loads as an empty profile.
        """
        raw = self._read_raw()
        if raw is None:
            return ProfileData()

        default_environment_name = raw.get("defaultEnvironmentName")
        if not isinstance(default_environment_name, str) or not default_environment_name:
            if default_environment_name is not None:
                self._log_reset("defaultEnvironmentName", "not a non-empty string")
            default_environment_name = DEFAULT_ENVIRONMENT_NAME

        environments = self._load_section(raw, "environments", _ENVIRONMENTS_ADAPTER)
        subscriptions = self._load_section(raw, "subscriptions", _SUBSCRIPTIONS_ADAPTER)

        return ProfileData(
            default_environment_name=default_environment_name,
            environments=environments,
            subscriptions=subscriptions,
        )

    def save(self, data: ProfileData) -> None:
        """Atomically write the profile.

        Raises:
            OSError: If the directory cannot be created or the file written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data.model_dump(mode="json", by_alias=True), indent=2)

        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(
            "Saved profile",
            extra={"path": str(self.path), "subscriptions": len(data.subscriptions)},
        )

    def _read_raw(self) -> dict[str, Any] | None:
        try:
            file_size = self.path.stat().st_size
        except FileNotFoundError:
            return None

        if file_size == 0:
            return None
        if file_size > MAX_PROFILE_FILE_SIZE_BYTES:
            logger.warning(
                "Profile file exceeds maximum size, ignoring it",
                extra={"path": str(self.path), "max_bytes": MAX_PROFILE_FILE_SIZE_BYTES},
            )
            return None

        content = self.path.read_text(encoding="utf-8")
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Profile file is not valid JSON, ignoring it", extra={"path": str(self.path), "error": str(e)})
            return None

        if not isinstance(raw, dict):
            logger.warning("Profile file is not a JSON object, ignoring it", extra={"path": str(self.path)})
            return None
        return raw

    def _load_section(self, raw: dict[str, Any], key: str, adapter: TypeAdapter) -> list:
        value = raw.get(key)
        if value is None:
            return []
        try:
            return adapter.validate_python(value)
        except ValidationError as e:
            self._log_reset(key, f"{e.error_count()} validation error(s)")
            return []

    def _log_reset(self, section: str, reason: str) -> None:
        logger.warning(
            "Profile section could not be loaded and was reset",
            extra={"path": str(self.path), "section": section, "reason": reason},
        )
