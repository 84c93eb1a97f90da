"""
Error taxonomy shared by the webhook, sync and bulk paths.

Pipeline-level errors (bad request, bad signature, missing integration) abort a
request before any write. Line/record/row errors are collected into result lists
and never raised past their batch boundary.
"""
from typing import Any, Optional


class BillsyncError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(BillsyncError):
    status_code = 400


class NotFoundError(BillsyncError):
    status_code = 404


class InvalidSignature(BillsyncError):
    status_code = 400


class ReferentialError(BillsyncError):
    status_code = 400


class PersistenceError(BillsyncError):
    status_code = 500


class ExternalNotifyError(BillsyncError):
    status_code = 502


class InsufficientStock(BillsyncError):
    status_code = 409

    def __init__(self, item_code: str, available, required):
        super().__init__(f"Insufficient stock for {item_code}: Available {available}, Required {required}")
        self.item_code = item_code
        self.available = available
        self.required = required
