"""
SQLite persistence for RentCompare listings and analytics events.

Listings are read-only to the comparison map; they are loaded by
scripts/seed_properties.py or by the wider marketplace. Events are
append-only. No ORM, just raw sqlite3.
"""

import sqlite3
import os
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("RENTCOMPARE_DB_PATH", "rentcompare.db")


@dataclass
class Property:
    """A rental listing as the comparison map sees it."""
    id: int
    title: str
    address: str = ""
    neighborhood: str = ""
    city: str = ""
    rent: Optional[float] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[float] = None
    square_feet: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def coordinate(self):
        return (self.latitude, self.longitude) if self.has_location else None

    @classmethod
    def from_row(cls, row) -> "Property":
        data = dict(row)
        data.pop("created_at", None)
        return cls(**data)

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["has_location"] = self.has_location
        return d


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS properties (
            id            INTEGER PRIMARY KEY,
            title         TEXT NOT NULL,
            address       TEXT NOT NULL DEFAULT '',
            neighborhood  TEXT NOT NULL DEFAULT '',
            city          TEXT NOT NULL DEFAULT '',
            rent          REAL,
            bedrooms      INTEGER,
            bathrooms     REAL,
            square_feet   INTEGER,
            latitude      REAL,
            longitude     REAL,
            created_at    TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type  TEXT NOT NULL,
            session_id  TEXT,
            property_id INTEGER,
            metadata    TEXT,
            created_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_properties_city ON properties(city);
        CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
        CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id);
    """)
    conn.commit()
    conn.close()


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

def save_property(prop: Property) -> int:
    """Insert or replace a listing. Returns its id."""
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """INSERT OR REPLACE INTO properties
           (id, title, address, neighborhood, city, rent, bedrooms,
            bathrooms, square_feet, latitude, longitude, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            prop.id,
            prop.title,
            prop.address or "",
            prop.neighborhood or "",
            prop.city or "",
            prop.rent,
            prop.bedrooms,
            prop.bathrooms,
            prop.square_feet,
            prop.latitude,
            prop.longitude,
            now,
        ),
    )
    conn.commit()
    conn.close()
    return prop.id


def get_property(property_id) -> Optional[Property]:
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM properties WHERE id = ?", (property_id,)
    ).fetchone()
    conn.close()
    return Property.from_row(row) if row else None


def get_properties(ids: Sequence[int]) -> List[Property]:
    """
    Load listings by id, in the order requested.

    Unknown ids are skipped; duplicates collapse to the first occurrence.
    The order matters because it drives marker colours and table rows.
    """
    wanted = list(dict.fromkeys(ids))
    if not wanted:
        return []
    placeholders = ",".join("?" for _ in wanted)
    conn = _get_db()
    rows = conn.execute(
        f"SELECT * FROM properties WHERE id IN ({placeholders})", wanted
    ).fetchall()
    conn.close()
    by_id = {row["id"]: Property.from_row(row) for row in rows}
    return [by_id[i] for i in wanted if i in by_id]


def list_properties(city: Optional[str] = None, limit: int = 50) -> List[Property]:
    """Listings for the picker, newest first."""
    conn = _get_db()
    if city:
        rows = conn.execute(
            "SELECT * FROM properties WHERE city = ? COLLATE NOCASE "
            "ORDER BY created_at DESC LIMIT ?",
            (city, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM properties ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
    conn.close()
    return [Property.from_row(row) for row in rows]


# ---------------------------------------------------------------------------
# Analytics events
# ---------------------------------------------------------------------------

def log_event(event_type, session_id=None, property_id=None, metadata=None):
    """
    Append an analytics event.

    event_type: one of comparison_created, search_run, route_failed,
                map_degraded
    metadata:   optional dict of extra info
    """
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """INSERT INTO events (event_type, session_id, property_id, metadata, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (
            event_type,
            session_id,
            property_id,
            json.dumps(metadata) if metadata else None,
            now,
        ),
    )
    conn.commit()
    conn.close()


def get_event_counts():
    """
    Builder utility: get event counts by type.
    Returns dict like {"comparison_created": 12, "search_run": 45, ...}
    """
    conn = _get_db()
    rows = conn.execute(
        "SELECT event_type, COUNT(*) as cnt FROM events GROUP BY event_type"
    ).fetchall()
    conn.close()
    return {row["event_type"]: row["cnt"] for row in rows}


def get_recent_events(limit=50):
    """Builder utility: get recent events for inspection."""
    conn = _get_db()
    rows = conn.execute(
        "SELECT * FROM events ORDER BY created_at DESC LIMIT ?", (limit,)
    ).fetchall()
    conn.close()
    return [dict(row) for row in rows]
