"""Tests for the data package cache and local storage."""

from protocol.models import DataPackagePayload

from .datapackage import DataPackageCache
from .storage import LocalStorage, get_client_id

PACKAGE = DataPackagePayload.model_validate({
    "games": {
        "Super Metroid": {
            "item_name_to_id": {"Missile": 83000, "Morph Ball": 83014},
            "location_name_to_id": {"Morphing Ball": 82000},
        },
        "Archipelago": {
            "item_name_to_id": {"Nothing": -1},
            "location_name_to_id": {"Cheat Console": -1},
        },
    }
})


class TestDataPackageCache:

    def test_empty_cache_needs_update(self, storage) -> None:
        cache = DataPackageCache(storage)
        assert cache.cached_version is None
        assert cache.needs_update(7) is True
        assert cache.needs_update(None) is True

    def test_custom_version_always_refreshed(self, storage) -> None:
        cache = DataPackageCache(storage)
        cache.store(PACKAGE, 5)
        assert cache.needs_update(5) is False
        assert cache.needs_update(0) is True

    def test_store_and_reload(self, tmp_path) -> None:
        DataPackageCache(LocalStorage(str(tmp_path))).store(PACKAGE, 5)

        reloaded = DataPackageCache(LocalStorage(str(tmp_path)))
        assert reloaded.load() is True
        assert reloaded.version == 5
        assert reloaded.item_name(83014) == "Morph Ball"
        assert reloaded.location_name(82000) == "Morphing Ball"
        assert reloaded.item_name(-1) == "Nothing"

    def test_custom_package_kept_in_memory_only(self, tmp_path) -> None:
        cache = DataPackageCache(LocalStorage(str(tmp_path)))
        cache.store(PACKAGE, 0)
        assert cache.item_name(83000) == "Missile"
        assert DataPackageCache(LocalStorage(str(tmp_path))).load() is False

    def test_unknown_ids(self, storage) -> None:
        cache = DataPackageCache(storage)
        assert cache.item_name(99) == "Unknown item (99)"
        assert cache.location_name(98) == "Unknown location (98)"

    def test_statistics(self, storage) -> None:
        cache = DataPackageCache(storage)
        cache.store(PACKAGE, 2)
        assert cache.get_statistics() == {"version": 2, "items": 3, "locations": 2}


class TestLocalStorage:

    def test_client_id_stable(self, tmp_path) -> None:
        first = get_client_id(LocalStorage(str(tmp_path)))
        second = get_client_id(LocalStorage(str(tmp_path)))
        assert first == second
        assert len(first) == 32

    def test_corrupt_file_starts_empty(self, tmp_path) -> None:
        (tmp_path / "storage.json").write_text("{not json")
        storage = LocalStorage(str(tmp_path))
        assert storage.get("clientId") is None
        storage.set("clientId", "abc")
        assert LocalStorage(str(tmp_path)).get("clientId") == "abc"
