"""
Unit tests for the last-known-good market snapshot cache.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from data_ingestion.snapshot_cache import SnapshotCache


NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


class TestSnapshotCache:

    def test_missing_file(self, tmp_path) -> None:
        cache = SnapshotCache(str(tmp_path / "cache.json"))
        assert cache.get("base_asset_price") is None

    def test_store_and_get(self, tmp_path) -> None:
        cache = SnapshotCache(str(tmp_path / "nested" / "cache.json"), max_age_hours=24)
        cache.store({"base_asset_price": Decimal("24.51")}, now=NOW)

        assert cache.get("base_asset_price", now=NOW + timedelta(hours=1)) == Decimal("24.51")
        assert cache.get("reward_token_price", now=NOW) is None

    def test_stale_value_skipped(self, tmp_path) -> None:
        cache = SnapshotCache(str(tmp_path / "cache.json"), max_age_hours=24)
        cache.store({"base_asset_price": Decimal("24.51")}, now=NOW)
        assert cache.get("base_asset_price", now=NOW + timedelta(hours=25)) is None

    def test_store_merges_fields(self, tmp_path) -> None:
        path = tmp_path / "cache.json"
        cache = SnapshotCache(str(path))
        cache.store({"base_asset_price": Decimal("24")}, now=NOW)
        cache.store({"locked_principal": Decimal("100000")}, now=NOW)

        fields = json.loads(path.read_text())["fields"]
        assert set(fields) == {"base_asset_price", "locked_principal"}
        assert fields["locked_principal"]["value"] == "100000"

    def test_corrupt_file_ignored(self, tmp_path) -> None:
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        cache = SnapshotCache(str(path))
        assert cache.get("base_asset_price") is None

        cache.store({"base_asset_price": Decimal("1")}, now=NOW)
        assert cache.get("base_asset_price", now=NOW) == Decimal("1")

    def test_malformed_entry_ignored(self, tmp_path) -> None:
        path = tmp_path / "cache.json"
        path.write_text(json.dumps({"fields": {
            "base_asset_price": {"value": "abc", "saved_at": NOW.isoformat()},
            "locked_principal": "100000",
        }}))
        cache = SnapshotCache(str(path))
        assert cache.get("base_asset_price", now=NOW) is None
        assert cache.get("locked_principal", now=NOW) is None
