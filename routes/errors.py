"""
Business errors raised by the consignment engine.

Each error carries a machine-readable ``code`` and the HTTP status the JSON API
answers with. Engine functions raise these; route handlers roll back and
serialize them with ``error_response``.
"""
from flask import jsonify


class ConsignmentError(Exception):
    code = 'consignment_error'
    status = 400

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        data = {'error': self.message, 'code': self.code}
        if self.details:
            data['details'] = self.details
        return data


class ValidationError(ConsignmentError):
    code = 'validation_error'
    status = 400


class NotFound(ConsignmentError):
    code = 'not_found'
    status = 404


class InvalidState(ConsignmentError):
    code = 'invalid_state'
    status = 409


class InvalidTransition(InvalidState):
    code = 'invalid_transition'


class InsufficientStock(ConsignmentError):
    code = 'insufficient_stock'
    status = 422


class Conflict(ConsignmentError):
    code = 'conflict'
    status = 409


class DuplicateKey(Conflict):
    code = 'duplicate_key'


class OverlappingPeriod(Conflict):
    code = 'overlapping_period'


class PeriodSettled(Conflict):
    code = 'period_settled'


class NoSalesInPeriod(ConsignmentError):
    code = 'no_sales_in_period'
    status = 422


def error_response(exc):
    """Serialize a ConsignmentError as (json, status)."""
    return jsonify(exc.to_dict()), exc.status
