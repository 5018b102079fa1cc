from __future__ import annotations


class RentalError(Exception):
    """Base class for errors raised by the rental lifecycle and billing services."""

    kind = "rental_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RentalError):
    kind = "validation_error"
    status_code = 400


class IllegalTransition(RentalError):
    kind = "illegal_transition"
    status_code = 409


class PreconditionNotMet(RentalError):
    kind = "precondition_not_met"
    status_code = 409


class NotFound(RentalError):
    kind = "not_found"
    status_code = 404


class Forbidden(RentalError):
    kind = "forbidden"
    status_code = 403


class ConcurrentModification(RentalError):
    kind = "concurrent_modification"
    status_code = 409


class StorageError(RentalError):
    kind = "storage_error"
    status_code = 503


class StorageTimeout(StorageError):
    kind = "storage_timeout"
    status_code = 504
