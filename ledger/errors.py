# ledger/errors.py
"""
Billing error hierarchy.

Every failure carries a stable string `code` that callers (and the HTTP layer)
can rely on. Subclasses group codes by how a caller should react:

- StateError: the entity is in the wrong state; user-correctable, never retried.
- ValidationError: bad input (amounts, line items, recipients).
- NotFound: the referenced entity does not exist.
- ProviderError: external payment provider refused or is not set up.
- WebhookError: integrity problems with an incoming provider callback.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    code = "billing_error"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None, **details: Any):
        self.code = code or self.code
        self.message = message or self.code.replace("_", " ")
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        out = {"error": self.code, "detail": self.message}
        if self.details:
            out["context"] = {k: str(v) for k, v in self.details.items()}
        return out

    def __repr__(self):
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class StateError(BillingError):
    code = "invalid_transition"


class ValidationError(BillingError):
    code = "invalid_amount"


class NotFound(BillingError):
    code = "not_found"


class ProviderError(BillingError):
    code = "provider_error"


class WebhookError(BillingError):
    code = "invalid_signature"


def invalid_transition(entity: str, current: str, target: str) -> StateError:
    return StateError(
        "invalid_transition",
        f"{entity} cannot transition from {current} to {target}",
        current=current,
        target=target,
    )
