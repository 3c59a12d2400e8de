"""
============================================================================
Snapshot Cache - Last-Known-Good Market Values
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Values stored as strings, restored as decimal.Decimal

CACHE FILE FORMAT:
    {
        "fields": {
            "base_asset_price": {"value": "24.51", "saved_at": "2026-01-15T..."},
            ...
        }
    }

    A cached value is only served while younger than max_age_hours.
    Writes go to a temp file and are moved into place.
============================================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Dict, Any
import json
import logging
import os

logger = logging.getLogger(__name__)


class SnapshotCache:
    """
    JSON file of the last successfully fetched market values.

    Example Usage:
        cache = SnapshotCache("./data/distribution/market_snapshot_cache.json", 24)
        cache.store({"base_asset_price": Decimal("24.51")})
        price = cache.get("base_asset_price")
    """

    def __init__(self, path: str, max_age_hours: int = 24):
        self.path = path
        self.max_age = timedelta(hours=max_age_hours)

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[CACHE] Unreadable snapshot cache ignored | path={self.path} | error={e}")
            return {}
        fields = document.get("fields") if isinstance(document, dict) else None
        return fields if isinstance(fields, dict) else {}

    def get(self, field_name: str, now: Optional[datetime] = None) -> Optional[Decimal]:
        """Cached value if present and fresh, else None."""
        entry = self._read().get(field_name)
        if not isinstance(entry, dict):
            return None
        try:
            saved_at = datetime.fromisoformat(entry["saved_at"])
            value = Decimal(str(entry["value"]))
        except (KeyError, TypeError, ValueError, ArithmeticError):
            return None
        if saved_at.tzinfo is None:
            saved_at = saved_at.replace(tzinfo=timezone.utc)

        now = now or datetime.now(timezone.utc)
        age = now - saved_at
        if age > self.max_age:
            logger.info(
                f"[CACHE] Stale value skipped | field={field_name} | "
                f"age_hours={age.total_seconds() / 3600:.1f}"
            )
            return None
        return value

    def store(self, values: Dict[str, Decimal], now: Optional[datetime] = None) -> None:
        """Merge fresh values into the cache file."""
        if not values:
            return
        saved_at = (now or datetime.now(timezone.utc)).isoformat()
        fields = self._read()
        for name, value in values.items():
            fields[name] = {"value": str(value), "saved_at": saved_at}

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"fields": fields}, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)
        logger.debug(f"[CACHE] Snapshot cache updated | path={self.path} | fields={sorted(values)}")
