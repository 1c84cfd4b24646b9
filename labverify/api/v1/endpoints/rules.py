from fastapi import APIRouter, Depends, HTTPException
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import logging

from ...deps import get_store
from ....exceptions import DuplicateRecordError, RuleNotFoundError
from ....models.domain import AutoVerificationRule, RuleAction, RuleType, ValidationRule, VerificationCriteria
from ....models.records import criteria_from_json, criteria_to_json, params_from_json, params_to_json
from ....services.repository import SqlAlchemyStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["Rules"])

class ValidationRuleRequest(BaseModel):
    rule_id: str
    test_id: str
    rule_type: RuleType
    parameters: Dict[str, Any] = Field(default_factory=dict)
    action: RuleAction = RuleAction.WARN
    requires_review: bool = False
    notify_on_trigger: bool = False
    active: bool = True
    priority: int = 0

class AutoVerificationRuleRequest(BaseModel):
    test_id: str
    name: Optional[str] = None
    # Omitted criteria fall back to VerificationCriteria.defaults()
    criteria: Optional[Dict[str, Any]] = None
    active: bool = True

def _rule_to_dict(rule: ValidationRule) -> Dict[str, Any]:
    return {
        "rule_id": rule.id,
        "test_id": rule.test_id,
        "rule_type": rule.rule_type.value,
        "parameters": params_to_json(rule.parameters),
        "action": rule.action.value,
        "requires_review": rule.requires_review,
        "notify_on_trigger": rule.notify_on_trigger,
        "active": rule.active,
        "priority": rule.priority,
    }

@router.post("/validation", response_model=Dict)
def add_validation_rule(
    request: ValidationRuleRequest,
    store: SqlAlchemyStore = Depends(get_store)
):
    """Add a validation rule for a test"""
    try:
        parameters = params_from_json(request.rule_type, request.parameters)
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Invalid parameters for rule {request.rule_id}: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Invalid parameters for {request.rule_type.value} rule: {e}")

    rule = ValidationRule(
        id=request.rule_id,
        test_id=request.test_id,
        rule_type=request.rule_type,
        parameters=parameters,
        action=request.action,
        requires_review=request.requires_review,
        notify_on_trigger=request.notify_on_trigger,
        active=request.active,
        priority=request.priority,
    )
    try:
        store.add_validation_rule(rule)
    except DuplicateRecordError as e:
        logger.error(f"Rejected validation rule: {str(e)}")
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "rule": _rule_to_dict(rule)}

@router.get("/validation/{test_id}", response_model=Dict)
def list_validation_rules(test_id: str, store: SqlAlchemyStore = Depends(get_store)):
    rules: List[ValidationRule] = store.get_validation_rules(test_id)
    return {"test_id": test_id, "rules": [_rule_to_dict(r) for r in rules]}

@router.put("/auto-verification", response_model=Dict)
def set_auto_verification_rule(
    request: AutoVerificationRuleRequest,
    store: SqlAlchemyStore = Depends(get_store)
):
    """Create or replace the auto-verification rule for a test"""
    if request.criteria is None:
        criteria = VerificationCriteria.defaults()
    else:
        criteria = criteria_from_json(request.criteria)
    store.set_auto_verification_rule(
        AutoVerificationRule(test_id=request.test_id, criteria=criteria, active=request.active),
        name=request.name,
    )
    return {"success": True, "test_id": request.test_id, "criteria": criteria_to_json(criteria)}

@router.get("/auto-verification/{test_id}", response_model=Dict)
def get_auto_verification_rule(test_id: str, store: SqlAlchemyStore = Depends(get_store)):
    """Auto-verification rule with success/failure counts derived from the decision stream"""
    try:
        rule = store.require_auto_verification_rule(test_id)
    except RuleNotFoundError as e:
        logger.error(f"Auto-verification lookup failed: {str(e)}")
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "test_id": rule.test_id,
        "criteria": criteria_to_json(rule.criteria),
        "success_count": rule.success_count,
        "failure_count": rule.failure_count,
        "active": rule.active,
    }
