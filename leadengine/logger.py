# leadengine/logger.py
"""
Run Logger
----------
Lightweight utility to log batch runs (nurture, station health) to the
'Run Logs' table.
"""

from __future__ import annotations

from typing import Dict

from leadengine.datastore import CONNECTOR, create
from leadengine.errors import PersistenceError
from leadengine.runtime import get_logger, iso_now
from leadengine.schema import RUN_LOGS

logger = get_logger("run_logger")


def log_run(
    run_type: str,
    processed: int = 0,
    breakdown: dict | str | None = None,
    status: str = "OK",
) -> Dict:
    """
    Log a system run into the Run Logs table. Never raises.
    Example:
        log_run("NURTURE_LEADS", processed=12)
    """
    record = RUN_LOGS.to_fields(
        {
            "type": run_type,
            "processed": processed,
            "breakdown": str(breakdown or {}),
            "status": status,
            "timestamp": iso_now(),
        }
    )
    try:
        create(CONNECTOR.run_logs(), record)
        logger.info(f"📝 Logged run: {run_type} | {status} | processed={processed}")
        return {"ok": True, "action": "created", "type": run_type, "status": status}
    except PersistenceError as e:
        logger.error(f"❌ log_run failed: {run_type} | {e}")
        return {"ok": False, "error": str(e)}
