"""Sync API — trigger passes, stop, status, job history, discrepancy report."""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ..dependencies import get_engine, get_ledger, get_reports
from ..schemas.sync import ManualSyncRequest, SyncTriggerOptions
from ..services.job_ledger import JobLedger
from ..services.report_service import ReportService
from ..services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _job_response(job, waited: bool):
    return JSONResponse(job.to_dict(), status_code=200 if waited else 202)


@router.post("/full")
async def api_full_sync(
    body: SyncTriggerOptions | None = None,
    engine: SyncEngine = Depends(get_engine),
):
    wait = body.wait if body else False
    job = await engine.trigger_full_sync(triggered_by="api", wait=wait)
    return _job_response(job, wait)


@router.post("/manual")
async def api_manual_sync(body: ManualSyncRequest, engine: SyncEngine = Depends(get_engine)):
    job = await engine.trigger_manual_sync(skus=body.skus, triggered_by="api", wait=body.wait)
    return _job_response(job, body.wait)


@router.post("/sku/{sku}")
async def api_sync_one(sku: str, engine: SyncEngine = Depends(get_engine)):
    job = await engine.sync_one(sku, triggered_by="api")
    return job.to_dict()


@router.post("/stop")
async def api_stop_sync(engine: SyncEngine = Depends(get_engine)):
    return {"stopRequested": engine.request_stop()}


@router.get("/status")
async def api_sync_status(engine: SyncEngine = Depends(get_engine)):
    from ..scheduler import next_run_time

    status = engine.get_status()
    nxt = next_run_time("full_sync")
    status["nextRunAt"] = nxt.isoformat() if nxt else None
    return status


@router.get("/discrepancies")
async def api_discrepancies(reports: ReportService = Depends(get_reports)):
    return await reports.discrepancy_report()


@router.get("/jobs")
async def api_list_jobs(
    limit: int = Query(20, ge=1, le=200),
    kind: str | None = None,
    ledger: JobLedger = Depends(get_ledger),
):
    return [job.to_dict() for job in ledger.recent_jobs(limit=limit, kind=kind)]


@router.get("/jobs/{job_id}")
async def api_get_job(job_id: str, ledger: JobLedger = Depends(get_ledger)):
    return ledger.get_job(job_id).to_dict()


@router.get("/activity")
async def api_activity(
    limit: int = Query(50, ge=1, le=500),
    sku: str | None = None,
    ledger: JobLedger = Depends(get_ledger),
):
    return [row.to_dict() for row in ledger.recent_activity(limit=limit, sku=sku)]
