import logging

from flask import current_app, jsonify, request

from services.exceptions import (
    DataIntegrityError, LedgerError, LedgerErrorKind, MintFailed, SupplyChainException, ValidationError,
)
from services.reconciliation_engine import ReconciliationEngine

logger = logging.getLogger(__name__)


def error_response(error):
    """JSON body and status for a service exception"""
    body = {'success': False, 'error': error.message, 'error_type': type(error).__name__}
    if isinstance(error, LedgerError):
        body['kind'] = error.kind.value
        if error.tx_hash:
            body['tx_hash'] = error.tx_hash
    if isinstance(error, MintFailed):
        body.update(error.to_dict())
        if isinstance(error.cause, LedgerError):
            body['kind'] = error.cause.kind.value
    if isinstance(error, DataIntegrityError):
        logger.error(f"Data integrity error: {error.message}")
    return jsonify(body), error.status_code


def register_error_handlers(app):
    @app.errorhandler(SupplyChainException)
    def handle_service_error(error):
        return error_response(error)


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError('No JSON data received.')
    return data


def get_ledger():
    ledger = current_app.extensions.get('ledger_client')
    if ledger is None:
        raise LedgerError(LedgerErrorKind.NETWORK, 'Ledger client is not configured')
    return ledger


def get_engine():
    return ReconciliationEngine(get_ledger(), metadata_base_url=current_app.config['METADATA_BASE_URL'])


def arg_bool(name):
    value = request.args.get(name)
    if value is None:
        return None
    return value.lower() in ('1', 'true', 'yes')
