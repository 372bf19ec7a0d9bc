from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


APP_DB_NAME = "ruler"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    recorded_series: Collection
    alert_events: Collection


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one MongoClient for the engine's own storage DB ("ruler").
    """

    def __init__(self, mongo_uri: str):
        self._mongo_uri = mongo_uri
        self._client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._client = MongoClient(self._mongo_uri, connect=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._client is None:
                self.connect()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False

    def close(self) -> None:
        """Close the Mongo client."""
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except PyMongoError:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def app_db(self) -> Database:
        """Return the ruler database handle."""
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client[APP_DB_NAME]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            recorded_series=db["recorded_series"],
            alert_events=db["alert_events"],
        )

    def init_indexes(self) -> None:
        """Create required indexes (idempotent)."""
        cols = self.collections()

        # ---- Recorded series ----
        # Common query: one metric over a time range.
        cols.recorded_series.create_index([("name", ASCENDING), ("ts", DESCENDING)], name="idx_recorded_name_ts")

        # ---- Alert events ----
        cols.alert_events.create_index([("group", ASCENDING), ("rule", ASCENDING)], name="idx_alert_events_group_rule")
        cols.alert_events.create_index([("fingerprint", ASCENDING)], name="idx_alert_events_fingerprint")
        cols.alert_events.create_index([("state", ASCENDING)], name="idx_alert_events_state")
        cols.alert_events.create_index([("createdAt", DESCENDING)], name="idx_alert_events_createdAt_desc")
