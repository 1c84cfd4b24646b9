from fastapi import APIRouter, Depends, HTTPException
from typing import Dict, Optional
from datetime import datetime
from pydantic import BaseModel, Field
import logging

from ...deps import get_qc_service, get_store
from ....exceptions import LabVerifyError
from ....models.domain import QCLevel
from ....services.pipeline import QCService
from ....services.repository import SqlAlchemyStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/qc", tags=["Quality Control"])

# Pydantic models for request/response
class QCLevelRequest(BaseModel):
    qc_test_id: str
    level_id: str
    target_mean: Optional[float] = None
    target_sd: Optional[float] = Field(default=None, ge=0)
    allowable_total_error: Optional[float] = Field(default=None, ge=0)

class QCPointSubmission(BaseModel):
    qc_test_id: str
    level_id: str
    value: float
    performed_by: str = ""
    instrument_id: Optional[str] = None
    timestamp: Optional[datetime] = None

@router.put("/levels", response_model=Dict)
def set_qc_level(
    request: QCLevelRequest,
    store: SqlAlchemyStore = Depends(get_store)
):
    """Create or update target mean/SD for a QC level"""
    try:
        level = QCLevel(
            qc_test_id=request.qc_test_id,
            level_id=request.level_id,
            target_mean=request.target_mean,
            target_sd=request.target_sd,
            allowable_total_error=request.allowable_total_error,
        )
        store.set_qc_level(level)
    except LabVerifyError as e:
        logger.error(f"Error saving QC level: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "qc_test_id": level.qc_test_id, "level_id": level.level_id}

@router.post("/points", response_model=Dict)
def record_qc_point(
    submission: QCPointSubmission,
    qc_service: QCService = Depends(get_qc_service)
):
    """Record a QC measurement and evaluate Westgard rules against prior history"""
    try:
        evaluation = qc_service.record_point(
            submission.qc_test_id,
            submission.level_id,
            submission.value,
            performed_by=submission.performed_by,
            instrument_id=submission.instrument_id,
            timestamp=submission.timestamp,
        )
    except LabVerifyError as e:
        logger.error(f"Error recording QC point: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "success": True,
        "point": evaluation.point.to_dict(),
        "statistics": evaluation.statistics.to_dict(),
        "limits": evaluation.limits.to_dict(),
        "violations": [v.value for v in evaluation.violations],
        "details": [d.to_dict() for d in evaluation.details],
        "qc_failed": evaluation.qc_failed,
    }

@router.get("/{qc_test_id}/{level_id}/status", response_model=Dict)
def get_qc_status(
    qc_test_id: str,
    level_id: str,
    qc_service: QCService = Depends(get_qc_service)
):
    """Current QC-failed state, read from the latest point"""
    return qc_service.status(qc_test_id, level_id)

@router.get("/{qc_test_id}/{level_id}/summary", response_model=Dict)
def get_qc_summary(
    qc_test_id: str,
    level_id: str,
    qc_service: QCService = Depends(get_qc_service)
):
    """Rolling statistics, performance against targets and trend"""
    summary = qc_service.summary(qc_test_id, level_id)
    if summary["statistics"]["n"] == 0:
        raise HTTPException(status_code=404, detail=f"No QC data for {qc_test_id}/{level_id}")
    return summary

@router.get("/{qc_test_id}/{level_id}/levey-jennings", response_model=Dict)
def get_levey_jennings(
    qc_test_id: str,
    level_id: str,
    qc_service: QCService = Depends(get_qc_service)
):
    """Levey-Jennings chart data for the current window"""
    frame = qc_service.levey_jennings(qc_test_id, level_id)
    if frame.empty:
        raise HTTPException(status_code=404, detail=f"No QC data for {qc_test_id}/{level_id}")

    frame["timestamp"] = frame["timestamp"].map(lambda ts: ts.isoformat())
    return {
        "qc_test_id": qc_test_id,
        "level_id": level_id,
        "points": frame.to_dict(orient="records"),
    }
