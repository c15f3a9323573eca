"""
Engine error taxonomy.

- ValidationError: malformed request (inverted window, bad quantity, illegal transition)
- AvailabilityConflict: commit-time shortfall, caller must re-preview
- AuthorizationDenied: every rule violation for every item, never just the first
- ExternalSystemError: custody system unreachable or returned an error
- ConsistencyDivergence: ledger/custody drift or a corrupt checkout chain
- NotFound: unknown reservation / checkout / item
"""

from typing import Any, Dict, List, Optional


class KitdeskError(Exception):
    """Base class for all engine errors"""

    status_code = 500
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class ValidationError(KitdeskError):
    status_code = 422
    code = "validation_error"


class NotFound(KitdeskError):
    status_code = 404
    code = "not_found"


class AvailabilityConflict(KitdeskError):
    status_code = 409
    code = "availability_conflict"

    def __init__(self, model_id: int, requested: int, free: int, model_name: Optional[str] = None):
        self.model_id = model_id
        self.model_name = model_name
        self.requested = requested
        self.free = free
        self.shortfall = requested - free
        label = model_name or f"model {model_id}"
        super().__init__(
            f"Not enough units of {label}: requested {requested}, "
            f"free {free} (short by {self.shortfall})"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "model_id": self.model_id,
            "requested": self.requested,
            "free": self.free,
            "shortfall": self.shortfall,
        })
        return data


class AuthorizationDenied(KitdeskError):
    status_code = 403
    code = "authorization_denied"

    def __init__(self, violations: List[Any]):
        self.violations = list(violations)
        summary = "; ".join(getattr(v, "message", str(v)) for v in self.violations)
        super().__init__(summary or "Booking not permitted")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [
            v.model_dump() if hasattr(v, "model_dump") else str(v)
            for v in self.violations
        ]
        return data


class ExternalSystemError(KitdeskError):
    status_code = 502
    code = "external_system_error"

    def __init__(self, message: str, http_status: int = 0, error_code: Optional[str] = None):
        super().__init__(message)
        self.http_status = http_status
        self.error_code = error_code


class ConsistencyDivergence(KitdeskError):
    status_code = 500
    code = "consistency_divergence"
