from typing import Optional


class LabVerifyError(Exception):
    """Base class for errors raised by the verification core"""


class RuleEvaluationError(LabVerifyError):
    """A single rule is malformed or one of its inputs is unavailable.

    Raised inside the evaluator and caught per rule; the rule degrades to a
    warning and the remaining rules still run.
    """

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Rule {rule_id}: {message}")
        self.rule_id = rule_id
        self.message = message


class SubmissionBlockedError(LabVerifyError):
    """Blocking validation errors prevent the result from being persisted"""

    def __init__(self, result_id: str, outcome, decision=None):
        errors = "; ".join(outcome.errors)
        super().__init__(f"Result {result_id} blocked: {errors}")
        self.result_id = result_id
        self.outcome = outcome
        self.decision = decision


class RuleNotFoundError(LabVerifyError):
    def __init__(self, kind: str, key: str, detail: Optional[str] = None):
        super().__init__(detail or f"No {kind} found for '{key}'")
        self.kind = kind
        self.key = key


class DuplicateRecordError(LabVerifyError):
    """A record with the same identifier is already stored"""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind.capitalize()} '{key}' already exists")
        self.kind = kind
        self.key = key
