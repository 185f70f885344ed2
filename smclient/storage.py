"""
Local Storage
Small JSON key/value store kept in the client's data directory.
Holds the stable client id and the cached data package.
"""
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STORAGE_FILE = "storage.json"


class LocalStorage:
    """JSON-file backed key/value store."""

    def __init__(self, data_dir: str):
        """
        Initialize storage.

        Args:
            data_dir: Directory holding the storage file. Created on first write.
        """
        self.path = Path(data_dir) / STORAGE_FILE
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                self._data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[STORAGE] Could not read {self.path}, starting empty: {e}")
            self._data = {}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._data, f)
        tmp_path.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._save()

    def update(self, values: Dict[str, Any]) -> None:
        """Set several keys with a single write."""
        self._data.update(values)
        self._save()


def get_client_id(storage: LocalStorage) -> str:
    """Return the stable client id, generating and persisting one if needed."""
    client_id: Optional[str] = storage.get("clientId")
    if not client_id:
        client_id = uuid.uuid4().hex
        storage.set("clientId", client_id)
    return client_id
