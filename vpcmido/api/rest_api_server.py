# File: vpcmido/api/rest_api_server.py
"""
VPC MidoNet Admin REST API

FastAPI front end over the driver's produced interface:
- health and Prometheus metrics
- one-shot reconciliation and teardown
- inventory listing
- duplicate/orphan cleanup and delete-by-identifier, both with check-only mode

Every operation returns the driver's integer status alongside the HTTP code.
"""

import logging
import time
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from vpcmido.config import load_config
from vpcmido.errors import ExitCode
from vpcmido.metrics import METRICS
from vpcmido.reconciler.reconciler import ReconciliationEngine, build_engine

logger = logging.getLogger(__name__)

app = FastAPI(
    title="VPC MidoNet Driver",
    description="Administrative API of the VPC to MidoNet reconciliation driver",
    version="1.0.0",
)

_engine: Optional[ReconciliationEngine] = None

_HTTP_STATUS = {
    ExitCode.OK: 200,
    ExitCode.PARTIAL: 207,
    ExitCode.CONFIG_ERROR: 400,
    ExitCode.FAILURE: 500,
}


def set_engine(engine: Optional[ReconciliationEngine]):
    global _engine
    _engine = engine


def get_engine() -> ReconciliationEngine:
    """Engine shared with the background loop; built from config on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(load_config())
    return _engine


class StatusResponse(BaseModel):
    status: int
    result: str
    detail: Optional[Dict[str, Any]] = None


def _respond(status: int, detail: Optional[Dict[str, Any]] = None, not_found: bool = False) -> JSONResponse:
    code = ExitCode(status)
    http_status = 404 if not_found and code == ExitCode.FAILURE else _HTTP_STATUS[code]
    body = StatusResponse(status=int(code), result=code.name.lower(), detail=detail)
    return JSONResponse(status_code=http_status, content=body.model_dump())


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    METRICS["api_requests"].labels(method=request.method, endpoint=request.url.path).inc()
    start = time.time()
    response = await call_next(request)
    logger.debug(f"{request.method} {request.url.path} -> {response.status_code} in {(time.time() - start) * 1000:.1f}ms")
    return response


@app.get("/health")
def health(engine: ReconciliationEngine = Depends(get_engine)):
    last = engine.last_result
    return {
        "status": "healthy",
        "loop_running": engine.running,
        "last_status": ExitCode(last.status).name.lower() if last else None,
    }


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/reconcile")
def reconcile(engine: ReconciliationEngine = Depends(get_engine)):
    result = engine.reconcile()
    return _respond(result.status, result.to_dict())


@app.get("/inventory")
def inventory(engine: ReconciliationEngine = Depends(get_engine)):
    status, data = engine.list_inventory()
    return _respond(status, data)


@app.post("/teardown")
def teardown(engine: ReconciliationEngine = Depends(get_engine)):
    return _respond(engine.teardown())


@app.post("/cleanup")
def cleanup(check_only: bool = False, engine: ReconciliationEngine = Depends(get_engine)):
    status, report = engine.delete_dups_and_orphans(check_only=check_only)
    return _respond(status, report)


@app.delete("/objects/{obj_id}")
def delete_object(obj_id: str, check_only: bool = False, engine: ReconciliationEngine = Depends(get_engine)):
    if not obj_id.strip():
        raise HTTPException(status_code=400, detail="object identifier required")
    status = engine.delete_object(obj_id, check_only=check_only)
    return _respond(status, {"id": obj_id, "check_only": check_only}, not_found=True)
