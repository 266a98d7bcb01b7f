"""
Device ingestion error taxonomy.

Every ingestion failure is terminal for its request and maps to a fixed
HTTP status and JSON body.  Device firmware matches on these bodies, so the
messages must not change.
"""

from typing import Any, Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError


class IngestError(Exception):
    status_code = 400
    message = "Ingestion failed"

    def __init__(self, message: Optional[str] = None, issues: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.issues = issues

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.issues is not None:
            body["issues"] = self.issues
        return body


class Unauthorized(IngestError):
    status_code = 401
    message = "Missing device authentication headers"


class InvalidSignature(IngestError):
    status_code = 401
    message = "Invalid signature"


class RateLimited(IngestError):
    status_code = 429
    message = "Rate limit exceeded"


class MalformedPayload(IngestError):
    status_code = 400
    message = "Invalid JSON body"


class ValidationFailed(IngestError):
    status_code = 400
    message = "Payload validation failed"

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "ValidationFailed":
        return cls(issues=flatten_issues(exc))


def flatten_issues(exc: ValidationError) -> Dict[str, Any]:
    """Group pydantic errors as {formErrors: [...], fieldErrors: {field: [...]}}.

    Errors without a location (e.g. the body is a list, not an object) land
    in formErrors.
    """
    form_errors: List[str] = []
    field_errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = err.get("loc") or ()
        msg = err.get("msg", "Invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        if not loc:
            form_errors.append(msg)
        else:
            field_errors.setdefault(str(loc[0]), []).append(msg)
    return {"formErrors": form_errors, "fieldErrors": field_errors}


async def ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())
