# leadengine/routes/cron.py
"""
🧠 Scheduled Job Router
-----------------------
Daily scheduler triggers. Both require ``Authorization: Bearer <CRON_SECRET>``
and are rejected before any processing otherwise.
"""

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from leadengine.auth import require_cron_secret
from leadengine.nurture import run_nurture
from leadengine.runtime import get_logger
from leadengine.station_health import run_station_health

log = get_logger("cron")

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.get("/nurture-leads")
async def nurture_leads():
    log.info("🚀 Starting job: nurture-leads")
    results = await run_in_threadpool(run_nurture)
    return {"success": True, "message": "Lead nurturing completed", "results": results}


@router.get("/station-health")
async def station_health():
    log.info("🚀 Starting job: station-health")
    results = await run_in_threadpool(run_station_health)
    return {"success": True, "message": "Station health check completed", "results": results}
