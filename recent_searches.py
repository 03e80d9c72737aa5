"""Recent free-text searches, offered as extra buttons in property info windows."""

import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from map_config import RECENT_SEARCH_CAP

# Shown before the user has searched anything.
DEFAULT_TERMS = ("Coffee shops", "Dog parks", "Yoga studios", "Thai food")


@dataclass
class RecentSearch:
    term: str
    count: int = 1
    last_used: float = 0.0

    def to_dict(self) -> Dict:
        return {"term": self.term, "count": self.count, "last_used": self.last_used}


class RecentSearchStore:
    """Capped, de-duplicated list of recent search terms.

    One instance is created by the app and handed to each comparison
    view; nothing mutates the list except ``record``.
    """

    def __init__(self, cap: int = RECENT_SEARCH_CAP, seed: Optional[Sequence[str]] = None,
                 clock=time.time):
        self.cap = cap
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: List[RecentSearch] = []
        for term in seed or ():
            self.record(term)

    def record(self, term: str) -> Optional[RecentSearch]:
        """Add ``term`` or bump it if already present (case-insensitive)."""
        term = (term or "").strip()
        if not term:
            return None
        with self._lock:
            now = self._clock()
            for i, entry in enumerate(self._entries):
                if entry.term.lower() == term.lower():
                    del self._entries[i]
                    entry.count += 1
                    entry.last_used = now
                    break
            else:
                entry = RecentSearch(term=term, last_used=now)
            self._entries.insert(0, entry)
            del self._entries[self.cap:]
            return entry

    def entries(self) -> List[RecentSearch]:
        with self._lock:
            return list(self._entries)

    def terms(self) -> List[str]:
        """Most recent first."""
        return [e.term for e in self.entries()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
