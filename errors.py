"""Request-level failures raised by the queue coordinator.

Each error carries the machine-readable ``code`` and HTTP status the API
layer reports.  They are always raised before any state is changed.
"""

from __future__ import annotations


class QueueError(Exception):
    code = "queue_error"
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InvalidCategoryError(QueueError):
    code = "invalid_category"
    status_code = 400


class InvalidWindowError(QueueError):
    code = "invalid_window"
    status_code = 400


class TicketNotFoundError(QueueError):
    code = "ticket_not_found"
    status_code = 404


class CallNotFoundError(QueueError):
    code = "call_not_found"
    status_code = 404


class RequirementNotFoundError(QueueError):
    code = "requirement_not_found"
    status_code = 404


class InvalidPayloadError(QueueError):
    code = "invalid_payload"
    status_code = 400
