"""
Data Package Cache
Maps opaque item/location ids to names, persisted per server version.
"""
import logging
from typing import Any, Dict, Optional

from protocol.models import DataPackagePayload

from .storage import LocalStorage

logger = logging.getLogger(__name__)

VERSION_KEY = "dataPackageVersion"
PACKAGE_KEY = "dataPackage"


class DataPackageCache:
    """
    Versioned cache of the server's data package.

    Version 0 marks a custom package: it is always rebuilt and never
    persisted.
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage
        self.version: Optional[int] = None
        self.item_names: Dict[int, str] = {}
        self.location_names: Dict[int, str] = {}

    @property
    def cached_version(self) -> Optional[int]:
        """Version of the persisted package, if one is stored."""
        if self.storage.get(PACKAGE_KEY) is None:
            return None
        return self.storage.get(VERSION_KEY)

    def needs_update(self, server_version: Optional[int]) -> bool:
        """Whether the package must be requested from the server."""
        cached = self.cached_version
        if cached is None or server_version is None:
            return True
        return server_version == 0 or server_version != cached

    def load(self) -> bool:
        """Build id maps from the persisted package. Returns False if none is stored."""
        data = self.storage.get(PACKAGE_KEY)
        if data is None:
            return False
        self.build(DataPackagePayload.model_validate(data))
        self.version = self.storage.get(VERSION_KEY)
        logger.info(f"[DATAPACKAGE] Loaded cached package version {self.version}")
        return True

    def store(self, package: DataPackagePayload, version: int) -> None:
        """Persist (unless custom) and rebuild the id maps."""
        if version != 0:
            self.storage.update({
                VERSION_KEY: version,
                PACKAGE_KEY: package.model_dump(),
            })
        self.version = version
        self.build(package)

    def build(self, package: DataPackagePayload) -> None:
        """Rebuild id -> name maps from a package."""
        item_names: Dict[int, str] = {}
        location_names: Dict[int, str] = {}
        for game in package.games.values():
            for name, item_id in game.item_name_to_id.items():
                item_names[item_id] = name
            for name, location_id in game.location_name_to_id.items():
                location_names[location_id] = name
        self.item_names = item_names
        self.location_names = location_names
        logger.debug(
            f"[DATAPACKAGE] {len(item_names)} items, {len(location_names)} locations"
        )

    def item_name(self, item_id: int) -> str:
        return self.item_names.get(item_id, f"Unknown item ({item_id})")

    def location_name(self, location_id: int) -> str:
        return self.location_names.get(location_id, f"Unknown location ({location_id})")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "items": len(self.item_names),
            "locations": len(self.location_names),
        }
