import sqlite3
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, List

from .errors import PersistenceError

logger = logging.getLogger("portbroker-server")


class Database:
    def __init__(self, db_path: str = "portbroker.db"):
        self.db_path = db_path
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self):
        """Initialize database and create tables if they don't exist"""
        # Ensure directory exists
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

        conn = self._connect()
        cursor = conn.cursor()

        try:
            # Older databases have an api_keys table without ip_address
            cursor.execute("PRAGMA table_info(api_keys)")
            api_key_columns = [col[1] for col in cursor.fetchall()]

            if api_key_columns and 'ip_address' not in api_key_columns:
                logger.info("     Migrating api_keys table: adding ip_address column")
                cursor.execute("ALTER TABLE api_keys ADD COLUMN ip_address TEXT")
                conn.commit()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    user TEXT NOT NULL,
                    ip_address TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tunnels (
                    id TEXT PRIMARY KEY,
                    local_port INTEGER NOT NULL,
                    public_port INTEGER NOT NULL,
                    api_key TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_tunnels_api_key
                ON tunnels(api_key)
            """)

            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to initialize database: {e}") from e
        finally:
            conn.close()

        logger.info(f"     Database initialized at {self.db_path}")

    # API key methods
    def create_api_key(self, user: str, ip_address: Optional[str] = None) -> str:
        """Create a new API key for user and return the raw key"""
        api_key = str(uuid.uuid4())
        created_at = datetime.now(timezone.utc).isoformat()

        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO api_keys (id, user, ip_address, created_at)
                VALUES (?, ?, ?, ?)
            """, (api_key, user, ip_address, created_at))
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"     Failed to create API key for {user}: {e}")
            raise PersistenceError("Failed to generate API key") from e
        finally:
            conn.close()

        logger.info(f"     Created API key {api_key[:8]}... for user {user}")
        return api_key

    def get_api_key(self, api_key: str) -> Optional[Dict]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM api_keys WHERE id = ?", (api_key,)).fetchone()
            return dict(row) if row else None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to look up API key: {e}") from e
        finally:
            conn.close()

    def validate_api_key(self, api_key: str) -> bool:
        return self.get_api_key(api_key) is not None

    # Tunnel methods
    def create_tunnel(self, tunnel_id: str, local_port: int, public_port: int,
                      api_key: str, created_at: datetime) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO tunnels (id, local_port, public_port, api_key, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (tunnel_id, local_port, public_port, api_key, created_at.isoformat()))
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"     Failed to persist tunnel {tunnel_id}: {e}")
            raise PersistenceError("Failed to create tunnel") from e
        finally:
            conn.close()

    def get_tunnel(self, tunnel_id: str) -> Optional[Dict]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM tunnels WHERE id = ?", (tunnel_id,)).fetchone()
            return dict(row) if row else None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to look up tunnel: {e}") from e
        finally:
            conn.close()

    def delete_tunnel(self, tunnel_id: str) -> bool:
        """Delete a tunnel row, returning whether it existed"""
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM tunnels WHERE id = ?", (tunnel_id,))
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"     Failed to delete tunnel {tunnel_id}: {e}")
            raise PersistenceError("Failed to stop tunnel") from e
        finally:
            conn.close()

    def list_tunnels(self) -> List[Dict]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM tunnels ORDER BY created_at").fetchall()
            return [dict(row) for row in rows]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list tunnels: {e}") from e
        finally:
            conn.close()
