from fastapi import APIRouter, Depends, HTTPException
from typing import Dict, Optional, Union
from datetime import datetime, timedelta
from pydantic import BaseModel, Field
import logging

from ...deps import get_result_service, get_router
from ....escalation.router import EscalationRouter
from ....exceptions import DuplicateRecordError, LabVerifyError, SubmissionBlockedError
from ....models.domain import NotificationKind, ReferenceRange, ResultValue
from ....services.pipeline import ResultVerificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/results", tags=["Result Verification"])

class ResultSubmission(BaseModel):
    result_id: str
    test_id: str
    patient_id: str
    sample_id: str = ""
    instrument_id: str = ""
    value: Union[float, str]
    unit: str = ""
    timestamp: datetime
    corrects: Optional[str] = None

    # Collaborator signals
    instrument_ok: bool = True
    sample_ok: bool = True
    consistency_ok: bool = True
    reference_min: Optional[float] = None
    reference_max: Optional[float] = None
    ordering_clinician_id: Optional[str] = None

    # Turnaround time, only used on submit
    tat_started_at: Optional[datetime] = None
    tat_target_minutes: Optional[int] = Field(default=None, gt=0)

    def to_domain(self) -> ResultValue:
        return ResultValue(
            result_id=self.result_id,
            test_id=self.test_id,
            patient_id=self.patient_id,
            sample_id=self.sample_id,
            instrument_id=self.instrument_id,
            value=self.value,
            unit=self.unit,
            timestamp=self.timestamp,
            corrects=self.corrects,
        )

    def signals(self) -> Dict:
        reference_range = None
        if self.reference_min is not None or self.reference_max is not None:
            reference_range = ReferenceRange(min=self.reference_min, max=self.reference_max)
        return {
            "instrument_ok": self.instrument_ok,
            "sample_ok": self.sample_ok,
            "consistency_ok": self.consistency_ok,
            "reference_range": reference_range,
        }

@router.post("/evaluate", response_model=Dict)
def evaluate_result(
    submission: ResultSubmission,
    service: ResultVerificationService = Depends(get_result_service)
):
    """Evaluate a result and decide auto-verification; nothing is recorded or sent"""
    try:
        report = service.evaluate_and_decide(submission.to_domain(), **submission.signals())
    except LabVerifyError as e:
        logger.error(f"Error evaluating result {submission.result_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
    return report.to_dict()

@router.post("/submit", response_model=Dict)
def submit_result(
    submission: ResultSubmission,
    service: ResultVerificationService = Depends(get_result_service)
):
    """Evaluate, audit and persist a result; blocking validation errors return 422, a reused result id 409"""
    tat_target = None
    if submission.tat_target_minutes is not None:
        tat_target = timedelta(minutes=submission.tat_target_minutes)

    try:
        report = service.submit(
            submission.to_domain(),
            tat_started_at=submission.tat_started_at,
            tat_target=tat_target,
            ordering_clinician_id=submission.ordering_clinician_id,
            **submission.signals(),
        )
    except DuplicateRecordError as e:
        logger.error(f"Rejected duplicate submission: {str(e)}")
        raise HTTPException(status_code=409, detail=str(e))
    except SubmissionBlockedError as e:
        raise HTTPException(status_code=422, detail={
            "message": str(e),
            "errors": list(e.outcome.errors),
            "outcome": e.outcome.to_dict(),
        })
    except LabVerifyError as e:
        logger.error(f"Error submitting result {submission.result_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, **report.to_dict()}

@router.post("/{result_id}/acknowledge", response_model=Dict)
def acknowledge_critical_value(
    result_id: str,
    escalation: EscalationRouter = Depends(get_router)
):
    """Acknowledge a critical value notification, stopping its escalation"""
    key = f"{NotificationKind.CRITICAL_VALUE.value}:{result_id}"
    if not escalation.acknowledge(key):
        raise HTTPException(status_code=404, detail=f"No pending critical value for '{result_id}'")
    return {"success": True, "result_id": result_id}

@router.post("/escalations/sweep", response_model=Dict)
def sweep_escalations(escalation: EscalationRouter = Depends(get_router)):
    """Escalate overdue critical values and report TAT breaches; intended for a scheduler"""
    escalated = escalation.overdue_escalations()
    breaches = escalation.tat_breaches()
    return {
        "escalations": [i.to_dict() for i in escalated],
        "tat_breaches": [i.to_dict() for i in breaches],
    }
