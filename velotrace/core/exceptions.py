"""
Service-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

Expected business outcomes (a route is full, a rule blocked the user) are
NOT exceptions: they come back as typed results from the ledger and the
rule engine. Only store-level faults and bad input are raised.

Usage:
    from velotrace.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="QuotaLedgerEntry", resource_id="Q1/route-1")
    raise ValidationError("completion_limit must be >= 0", details={...})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    For the ledger this means initialize_tracking() was never run for the
    (questionnaire, route) pair. Not retried automatically.

    Args:
        resource: Human-readable entity name (e.g. "Route", "ValidationRule").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class TransientContentionError(Exception):
    """The ledger's conditional write lost every attempt in its retry budget.

    Not a data-integrity problem: the counter is untouched by this caller.
    The caller may retry the whole submission after a backoff. Maps to 503.
    """

    def __init__(self, questionnaire_id: str, route_id: str, attempts: int) -> None:
        self.questionnaire_id = questionnaire_id
        self.route_id = route_id
        self.attempts = attempts
        super().__init__(
            f"Quota ledger contention on {questionnaire_id}/{route_id} "
            f"after {attempts} attempt(s)"
        )


class PartialFailureError(Exception):
    """A slot was reserved but the SubmissionRecord append failed.

    ``compensated`` tells whether the compensating release succeeded. When
    it is False the slot is leaked until reconcile() frees it.
    """

    def __init__(
        self,
        questionnaire_id: str,
        route_id: str,
        compensated: bool,
        cause: Exception | None = None,
    ) -> None:
        self.questionnaire_id = questionnaire_id
        self.route_id = route_id
        self.compensated = compensated
        self.cause = cause
        state = "released" if compensated else "LEAKED"
        super().__init__(
            f"Submission record append failed for {questionnaire_id}/{route_id}; "
            f"reservation {state}"
        )


class RuleConfigError(Exception):
    """A validation rule row has an unknown type or malformed config."""

    def __init__(self, rule_type: str | None, message: str, rule_id: int | None = None) -> None:
        self.rule_type = rule_type
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id if rule_id is not None else '?'} ({rule_type}): {message}")
