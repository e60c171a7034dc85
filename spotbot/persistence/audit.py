# spotbot/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from spotbot.core.errors import PersistenceError
from spotbot.ops.context import get_cycle_id
from spotbot.persistence.db import DB, utc_now_iso

log = logging.getLogger("spotbot.audit")


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file for tailing.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/spotbot_audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            log.warning("audit jsonl unavailable (%s): %s", self.jsonl_path, e)

    def event(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cycle_id: Optional[str] = None,
    ) -> None:
        """
        Record one event. A failing DB write is logged, never raised:
        auditing must not interrupt a tick.
        """
        cycle_id = cycle_id or get_cycle_id()
        ts = utc_now_iso()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)

        # 1) DB (source of truth)
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(timestamp_utc, cycle_id, user_id, symbol, event_type, action, details_json)
                    VALUES (?,?,?,?,?,?,?)
                    """,
                    (ts, cycle_id, user_id, symbol, event_type, action, payload),
                )
        except PersistenceError as e:
            log.error("audit write failed for %s/%s: %s", event_type, action, e)

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "cycle_id": cycle_id,
                "user_id": user_id,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            try:
                d["details"] = json.loads(d.pop("details_json") or "{}")
            except ValueError:
                d["details"] = {}
            out.append(d)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # never crash trading loop because audit file write failed
            log.debug("audit jsonl write failed: %s", e)
