import json
import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class SavedDeviceStore:
    """Remembers the last printer that was connected successfully."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def save(self, device_id: str) -> None:
        """Write the device id. Failures are logged, not raised."""
        try:
            self.path.write_text(json.dumps({"deviceId": device_id}), encoding="utf-8")
        except OSError as e:
            logger.error("Error saving printer to %s: %s", self.path, e)

    def load(self) -> Optional[str]:
        """Return the saved device id, or None if there is none to read."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        device_id = data.get("deviceId")
        return device_id if isinstance(device_id, str) and device_id else None
