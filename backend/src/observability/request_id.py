"""Request ID management for request correlation.

The request id lives in a context variable so it follows the request across
async handlers; Celery tasks set it from the enqueuing request.
"""

import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def generate_request_id() -> str:
    return str(uuid.uuid4())


def get_request_id() -> str:
    """Current request ID or "no-request-id" outside a request."""
    return request_id_var.get() or "no-request-id"


def set_request_id(request_id: Optional[str]) -> None:
    request_id_var.set(request_id)
