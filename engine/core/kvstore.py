"""Small persistent key/value blob backed by one JSON file.

Used for state that must survive a restart but is cheap to lose, such as the
last processed change event marker. A missing or unreadable file is treated
as empty.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import orjson

from core.logging import get_logger

logger = get_logger(__name__)


class BlobStore:
    """JSON file key/value store (orjson)."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            self._data = {}
            return self._data
        except OSError as e:
            logger.warning("Blob store unreadable, starting empty", path=str(self.path), error=str(e))
            self._data = {}
            return self._data

        try:
            data = orjson.loads(raw) if raw else {}
        except orjson.JSONDecodeError as e:
            logger.warning("Blob store corrupt, starting empty", path=str(self.path), error=str(e))
            data = {}
        self._data = data if isinstance(data, dict) else {}
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return False
        del data[key]
        self._write(data)
        return True

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))
        os.replace(tmp, self.path)
