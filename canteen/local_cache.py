import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from canteen import config
from canteen.errors import StoreError

logger = logging.getLogger(__name__)


class LocalCache:
    """Device-local string key/value cache kept in a single JSON file."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or config.LOCAL_CACHE_PATH).expanduser()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Local cache %s unreadable, starting empty: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.error("Local cache %s is not an object, starting empty", self.path)
            return {}
        return data

    def _save(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Cannot write local cache {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)
