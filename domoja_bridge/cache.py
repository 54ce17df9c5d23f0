#
# Copyright 2025 The DomojaBridge contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""SQLite-backed store of the accessories published over HomeKit."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional

from .database import ensure_schema_and_migrate
from .models import AccessorySpec

logger = logging.getLogger(__name__)


@dataclass
class StoredAccessory:
    token: str
    aid: int
    spec: AccessorySpec


class AccessoryStore:
    """Accessory store with in-memory caching.

    Everything is kept in RAM and written through to SQLite on change, so
    reads never touch the database. Meant for tens of accessories.
    """

    def __init__(self, db_path: str):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.entries: Dict[str, StoredAccessory] = {}
        ensure_schema_and_migrate(self.db_path)
        self._load_from_db()

    def _load_from_db(self):
        """Load all stored accessories into memory."""
        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute("SELECT uuid, aid, spec FROM accessories ORDER BY created_at, uuid").fetchall()
        finally:
            conn.close()

        for token, aid, spec_json in rows:
            try:
                spec = AccessorySpec.from_dict(json.loads(spec_json))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Ignoring unreadable stored accessory {token}: {e}")
                continue
            self.entries[token] = StoredAccessory(token, aid, spec)

        logger.info(f"Loaded {len(self.entries)} stored accessories from database")

    def all(self) -> List[StoredAccessory]:
        return list(self.entries.values())

    def get(self, token: str) -> Optional[StoredAccessory]:
        return self.entries.get(token)

    def used_aids(self) -> Dict[int, str]:
        return {entry.aid: entry.token for entry in self.entries.values()}

    def save(self, token: str, aid: int, spec: AccessorySpec):
        """Create or replace a stored accessory, in memory and in the database."""
        self.entries[token] = StoredAccessory(token, aid, spec)

        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                INSERT INTO accessories (uuid, display_name, spec, aid)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(uuid) DO UPDATE SET
                    display_name = excluded.display_name,
                    spec = excluded.spec,
                    aid = excluded.aid,
                    updated_at = CURRENT_TIMESTAMP
            """, (token, spec.display_name, json.dumps(spec.to_dict()), aid))
            conn.commit()
        finally:
            conn.close()
        logger.debug(f"Saved accessory {spec.display_name} ({token}, aid={aid})")

    def delete(self, token: str):
        """Delete a stored accessory from memory and database."""
        self.entries.pop(token, None)

        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("DELETE FROM accessories WHERE uuid = ?", (token,))
            conn.commit()
        finally:
            conn.close()
        logger.debug(f"Deleted stored accessory {token}")
