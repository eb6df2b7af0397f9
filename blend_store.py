import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from coal_properties import CATALOG_FIELDS, Coal

logger = logging.getLogger(__name__)

# Blend scalar metrics stored as real columns, keyed by their document name
_METRIC_COLUMNS = {
    "totalFlow": "total_flow",
    "avgGCV": "avg_gcv",
    "avgAFT": "avg_aft",
    "heatRate": "heat_rate",
    "costRate": "cost_rate",
}

# Blend list fields stored as JSON text
_JSON_COLUMNS = {
    "rows": "rows_json",
    "flows": "flows_json",
    "bunkers": "bunkers_json",
    "aftPerMill": "aft_per_mill_json",
    "blendedGCVPerMill": "blended_gcv_per_mill_json",
}


class BlendStore:
    """
    SQLite persistence for the coal catalog and operator blends.
    """

    def __init__(self, db_path: str = "coal_blend.db"):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        conn = self._connect()
        c = conn.cursor()
        oxide_cols = ", ".join(f"{k} REAL DEFAULT 0" for k in CATALOG_FIELDS)
        c.execute(f'''CREATE TABLE IF NOT EXISTS coals
                     (id INTEGER PRIMARY KEY AUTOINCREMENT,
                      coal TEXT,
                      {oxide_cols},
                      gcv REAL DEFAULT 0,
                      cost REAL DEFAULT 0,
                      color TEXT DEFAULT '')''')
        c.execute('''CREATE TABLE IF NOT EXISTS blends
                     (id INTEGER PRIMARY KEY AUTOINCREMENT,
                      created_at REAL,
                      updated_at REAL,
                      generation REAL,
                      rows_json TEXT,
                      flows_json TEXT,
                      bunkers_json TEXT,
                      total_flow REAL DEFAULT 0,
                      avg_gcv REAL DEFAULT 0,
                      avg_aft REAL,
                      heat_rate REAL,
                      cost_rate REAL DEFAULT 0,
                      aft_per_mill_json TEXT,
                      blended_gcv_per_mill_json TEXT)''')
        c.execute('''CREATE INDEX IF NOT EXISTS idx_blends_created ON blends (created_at)''')
        conn.commit()
        conn.close()
        logger.info("Blend store ready at %s", self.db_path)

    # --- Coal catalog ---

    def replace_coals(self, records: List[Dict[str, Any]]) -> int:
        """Drops the whole catalog and inserts `records` in its place."""
        coals = [Coal.from_dict(r) for r in records]
        columns = ["coal"] + CATALOG_FIELDS + ["gcv", "cost", "color"]
        placeholders = ", ".join("?" for _ in columns)

        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute("DELETE FROM coals")
            c.executemany(
                f"INSERT INTO coals ({', '.join(columns)}) VALUES ({placeholders})",
                [tuple(getattr(coal, col) for col in columns) for coal in coals],
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Coal catalog replaced with %d entries", len(coals))
        return len(coals)

    def list_coals(self) -> List[Coal]:
        conn = self._connect()
        rows = conn.execute("SELECT * FROM coals ORDER BY id").fetchall()
        conn.close()
        return [Coal.from_dict(dict(r)) for r in rows]

    def coal_names(self) -> List[Dict[str, Any]]:
        conn = self._connect()
        rows = conn.execute("SELECT id, coal FROM coals ORDER BY id").fetchall()
        conn.close()
        return [{"_id": r["id"], "coal": r["coal"]} for r in rows]

    def count_coals(self) -> int:
        conn = self._connect()
        (count,) = conn.execute("SELECT COUNT(*) FROM coals").fetchone()
        conn.close()
        return count

    # --- Blends ---

    @staticmethod
    def _blend_values(doc: Dict[str, Any]) -> Dict[str, Any]:
        values = {"generation": doc.get("generation")}
        for key, col in _METRIC_COLUMNS.items():
            values[col] = doc.get(key)
        for key, col in _JSON_COLUMNS.items():
            values[col] = json.dumps(doc.get(key) or [])
        return values

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "_id": row["id"],
            "generation": row["generation"],
            "createdAt": datetime.fromtimestamp(row["created_at"]).isoformat(),
            "updatedAt": datetime.fromtimestamp(row["updated_at"]).isoformat(),
        }
        for key, col in _JSON_COLUMNS.items():
            doc[key] = json.loads(row[col]) if row[col] else []
        for key, col in _METRIC_COLUMNS.items():
            doc[key] = row[col]
        return doc

    def create_blend(self, doc: Dict[str, Any]) -> int:
        values = self._blend_values(doc)
        now = datetime.now().timestamp()
        values["created_at"] = now
        values["updated_at"] = now
        cols = list(values)

        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute(
                f"INSERT INTO blends ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [values[col] for col in cols],
            )
            conn.commit()
            blend_id = c.lastrowid
        finally:
            conn.close()
        return blend_id

    def update_blend(self, blend_id: int, doc: Dict[str, Any]) -> bool:
        """Overwrites a blend in place. False when no such blend exists."""
        values = self._blend_values(doc)
        values["updated_at"] = datetime.now().timestamp()
        assignments = ", ".join(f"{col} = ?" for col in values)

        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute(f"UPDATE blends SET {assignments} WHERE id = ?", [*values.values(), blend_id])
            conn.commit()
            updated = c.rowcount > 0
        finally:
            conn.close()
        return updated

    def get_blend(self, blend_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        row = conn.execute("SELECT * FROM blends WHERE id = ?", (blend_id,)).fetchone()
        conn.close()
        return self._row_to_document(row) if row else None

    def latest_blend(self) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        row = conn.execute("SELECT * FROM blends ORDER BY created_at DESC, id DESC LIMIT 1").fetchone()
        conn.close()
        return self._row_to_document(row) if row else None
