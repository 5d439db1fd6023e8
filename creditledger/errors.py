"""Error taxonomy for the credit ledger.

Every error carries a machine-readable ``kind``, a detailed ``message``
(logged internally) and a ``public_message`` that is safe to return to a
caller. Security and consistency errors keep their details out of the
public message.
"""


class CreditError(Exception):
    kind = "credit_error"
    public_message = "The credit operation could not be completed."
    retryable = False

    def __init__(self, message=None, **details):
        self.message = message or self.public_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        return {"error": self.kind, "message": self.public_message}


class ValidationError(CreditError):
    """Limit, role or amount check failed. The caller can fix the input."""

    kind = "validation_error"

    def __init__(self, message, suggested_action=None, **details):
        super().__init__(message, **details)
        self.suggested_action = suggested_action

    @property
    def public_message(self):
        return self.message

    def to_dict(self):
        data = {"error": self.kind, "message": self.message}
        if self.suggested_action:
            data["suggested_action"] = self.suggested_action
        return data


class InsufficientBalance(CreditError):
    kind = "insufficient_balance"

    def __init__(self, required, available, suggested_action=None):
        self.required = required
        self.available = available
        self.shortfall = max(required - available, 0)
        self.suggested_action = suggested_action or (
            f"Purchase at least {self.shortfall} more credits to continue."
        )
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}."
        )

    @property
    def public_message(self):
        return self.message

    def to_dict(self):
        return {
            "error": self.kind,
            "message": self.message,
            "required": self.required,
            "available": self.available,
            "shortfall": self.shortfall,
            "suggested_action": self.suggested_action,
        }


class TransactionNotFound(CreditError):
    kind = "transaction_not_found"
    public_message = "Transaction not found."


class InvalidTransition(CreditError):
    """Illegal state-machine move. Indicates a race or a programming error."""

    kind = "invalid_transition"

    def __init__(self, current, target, entity="transaction", entity_id=None):
        self.current = current
        self.target = target
        self.entity = entity
        self.entity_id = entity_id
        label = f"{entity} {entity_id}" if entity_id else entity
        super().__init__(
            f"Cannot transition {label} from '{current}' to '{target}'"
        )


class BalanceConflict(CreditError):
    """Optimistic balance update lost the race too many times."""

    kind = "balance_conflict"
    retryable = True


class InvalidSignature(CreditError):
    kind = "invalid_signature"
    public_message = "Invalid signature"


class InvalidEventFormat(CreditError):
    kind = "invalid_event_format"
    public_message = "Invalid event payload"


class HandlerFailure(CreditError):
    """Transient failure while dispatching a verified webhook event."""

    kind = "handler_failure"
    retryable = True


class GatewayInconsistency(CreditError):
    """The gateway reports something the ledger cannot reconcile."""

    kind = "gateway_inconsistency"
