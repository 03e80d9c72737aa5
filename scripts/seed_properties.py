#!/usr/bin/env python3
"""
Load rental listings into the RentCompare database.

Accepts a JSON array of objects or a CSV with a header row. Field names
follow the marketplace export (camelCase squareFeet is accepted as well
as square_feet). Rows without latitude/longitude are loaded anyway; the
comparison map labels them "No location data".

Usage:
  python scripts/seed_properties.py listings.json
  python scripts/seed_properties.py listings.csv
  python scripts/seed_properties.py --demo          # three Manhattan listings
"""

import argparse
import csv
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from models import Property, init_db, save_property  # noqa: E402

DEMO_LISTINGS = [
    {"id": 1, "title": "Sunny 1BR near Union Square", "address": "20 E 17th St, New York, NY",
     "neighborhood": "Flatiron", "city": "New York", "rent": 3650, "bedrooms": 1,
     "bathrooms": 1, "square_feet": 620, "latitude": 40.7379, "longitude": -73.9910},
    {"id": 2, "title": "Renovated 2BR in the East Village", "address": "311 E 6th St, New York, NY",
     "neighborhood": "East Village", "city": "New York", "rent": 4200, "bedrooms": 2,
     "bathrooms": 1, "square_feet": 780, "latitude": 40.7268, "longitude": -73.9874},
    {"id": 3, "title": "Studio with roof deck, Chelsea", "address": "245 W 25th St, New York, NY",
     "neighborhood": "Chelsea", "city": "New York", "rent": 2950, "bedrooms": 0,
     "bathrooms": 1, "square_feet": 450, "latitude": 40.7460, "longitude": -73.9960},
]

_ALIASES = {"squareFeet": "square_feet", "lat": "latitude", "lng": "longitude"}
_INT_FIELDS = {"id", "bedrooms", "square_feet"}
_FLOAT_FIELDS = {"rent", "bathrooms", "latitude", "longitude"}


def _coerce(record):
    """Normalise one raw record into Property kwargs."""
    out = {}
    for key, value in record.items():
        key = _ALIASES.get(key, key)
        if key not in Property.__dataclass_fields__:
            continue
        if value in ("", None):
            value = None
        elif key in _INT_FIELDS:
            value = int(float(value))
        elif key in _FLOAT_FIELDS:
            value = float(value)
        out[key] = value
    if out.get("id") is None or not out.get("title"):
        raise ValueError(f"listing needs id and title: {record!r}")
    return Property(**out)


def load_records(path):
    path = Path(path)
    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8") as f:
            return list(csv.DictReader(f))
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    return data if isinstance(data, list) else data.get("properties", [])


def seed(records):
    """Insert records; returns (loaded, skipped)."""
    init_db()
    loaded = skipped = 0
    for record in records:
        try:
            prop = _coerce(record)
        except (TypeError, ValueError) as e:
            print(f"  SKIP: {e}")
            skipped += 1
            continue
        save_property(prop)
        loaded += 1
    return loaded, skipped


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Load rental listings into the RentCompare DB")
    parser.add_argument("path", nargs="?", help="JSON or CSV file of listings")
    parser.add_argument("--demo", action="store_true", help="Load three demo listings")
    args = parser.parse_args()

    if args.demo:
        records = DEMO_LISTINGS
    elif args.path:
        records = load_records(args.path)
    else:
        parser.error("a path or --demo is required")

    loaded, skipped = seed(records)
    print(f"Loaded {loaded} listings ({skipped} skipped)")
