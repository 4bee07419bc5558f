import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DARK_MODE_KEY = "is_dark_mode"
ADMIN_PROFILE_KEY = "admin_profile"


class LocalPreferences:
    """Small key/value state kept beside the service, outside the record store."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._values: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        if not self.path or not self.path.exists():
            self._values = {}
            return
        try:
            self._values = json.loads(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable preferences file %s: %s", self.path, exc)
            self._values = {}

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._values, ensure_ascii=False, indent=2), encoding="utf-8")

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._save()

    @property
    def is_dark_mode(self) -> bool:
        return bool(self.get(DARK_MODE_KEY, False))

    def set_dark_mode(self, enabled: bool) -> None:
        self.set(DARK_MODE_KEY, bool(enabled))

    @property
    def admin_profile(self) -> Dict[str, str]:
        profile = self.get(ADMIN_PROFILE_KEY)
        return profile if isinstance(profile, dict) else {}

    def set_admin_profile(self, name: str, email: str) -> None:
        self.set(ADMIN_PROFILE_KEY, {"name": name, "email": email})
