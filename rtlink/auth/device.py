"""Persisted device identifier used for device authentication."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)

DEVICE_ID_PREFIX = "device_"
DEVICE_ID_MIN_LENGTH = 10
DEVICE_ID_MAX_LENGTH = 128


def generate_device_id() -> str:
    return f"{DEVICE_ID_PREFIX}{uuid.uuid4().hex}"


def device_id_problem(value: Optional[str]) -> Optional[str]:
    """Return why a device id would be rejected by the backend, or None if it is acceptable."""

    if not value or not value.strip():
        return "Device id is empty"
    if len(value) < DEVICE_ID_MIN_LENGTH or len(value) > DEVICE_ID_MAX_LENGTH:
        return (
            f"Device id must be between {DEVICE_ID_MIN_LENGTH} and {DEVICE_ID_MAX_LENGTH} "
            f"characters, got {len(value)}"
        )
    return None


@dataclass
class DeviceIdStore:
    """Loads the device id from disk, generating and persisting one on first use."""

    path: Path = field(default_factory=lambda: Path("./var/device_id"))
    generator: Callable[[], str] = generate_device_id
    device_id: Optional[str] = None

    def load_or_create(self) -> str:
        if self.device_id:
            return self.device_id
        try:
            if self.path.is_file():
                existing = self.path.read_text(encoding="utf-8").strip()
                if existing:
                    self.device_id = existing
                    return existing
        except OSError:
            LOGGER.warning("Could not read device id from %s; generating a new one", self.path)
        return self._store(self.generator())

    def rotate(self) -> str:
        """Replace the stored id, e.g. after the backend rejected it as malformed."""

        previous = self.device_id
        new_id = self._store(self.generator())
        LOGGER.info("Rotated device id %s -> %s", previous, new_id)
        return new_id

    def _store(self, new_id: str) -> str:
        self.device_id = new_id
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(new_id, encoding="utf-8")
        except OSError:
            # runtime keeps the generated id even if it cannot be persisted
            LOGGER.warning("Could not persist device id to %s", self.path)
        return new_id
