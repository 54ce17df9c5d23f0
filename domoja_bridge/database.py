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

"""Database schema for Domoja Bridge."""

import logging
import sqlite3
import uuid

logger = logging.getLogger(__name__)

# Accessories known to the HomeKit side, restored at startup.
# Device state is never stored here.
ACCESSORY_SCHEMA = """
CREATE TABLE IF NOT EXISTS accessories (
    uuid TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    spec TEXT NOT NULL,
    aid INTEGER NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_accessories_name ON accessories(display_name);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accessories_aid ON accessories(aid);
"""

SUPPORTED_SCHEMA_VERSION = 1

# aid 1 is the bridge itself
_FIRST_AID = 2
_AID_RANGE = 2 ** 31 - _FIRST_AID


def aid_for_token(token: str) -> int:
    """Derive a stable HAP accessory id from an accessory uuid."""
    return _FIRST_AID + uuid.UUID(token).int % _AID_RANGE


def ensure_schema_and_migrate(db_path: str):
    """Ensure the schema exists and record its version in PRAGMA user_version.

    Raises:
        RuntimeError: if the database was written by a newer version
    """
    conn = sqlite3.connect(db_path)
    try:
        current_version = conn.execute("PRAGMA user_version").fetchone()[0]
        if current_version > SUPPORTED_SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version ({current_version}) is newer than supported ({SUPPORTED_SCHEMA_VERSION})")

        conn.executescript(ACCESSORY_SCHEMA)
        if current_version < SUPPORTED_SCHEMA_VERSION:
            conn.execute(f"PRAGMA user_version = {SUPPORTED_SCHEMA_VERSION}")
            logger.info(f"Initialized database {db_path} at schema version {SUPPORTED_SCHEMA_VERSION}")
        conn.commit()
    finally:
        conn.close()
