from flask import Blueprint, current_app, jsonify, request

from services.batch_repository import BatchRepository
from services.composition_resolver import CompositionResolver
from services.token_metadata import build_token_metadata
from utils.api_utils import get_engine

token_bp = Blueprint('token', __name__, url_prefix='/api')

@token_bp.route('/tokens', methods=['GET'])
def list_tokens():
    """Minted batches known to the repository"""
    batches = BatchRepository().list_batches(manufacturer_address=request.args.get('manufacturer'), minted=True)
    return jsonify({'success': True, 'tokens': [b.to_dict() for b in batches]})

@token_bp.route('/tokens/<int:token_id>', methods=['GET'])
def token_details(token_id):
    """Composition tree and supply-chain locations of a token"""
    resolver = CompositionResolver(max_workers=current_app.config['RESOLVER_MAX_WORKERS'])
    result = resolver.resolve(token_id, timeout=current_app.config['RESOLVE_TIMEOUT'])
    body = {'success': True}
    body.update(result.to_dict())
    return jsonify(body)

@token_bp.route('/metadata/<int:token_id>', methods=['GET'])
def token_metadata(token_id):
    """ERC-1155 metadata of a minted token"""
    batch = BatchRepository().get_batch_by_token(token_id)
    return jsonify(build_token_metadata(batch, request.host_url))

@token_bp.route('/metadata/batch/<manufacturer>/<int:batch_number>', methods=['GET'])
def batch_metadata(manufacturer, batch_number):
    """Metadata at the URI recorded on mint, before the token id is known"""
    batch = BatchRepository().find_batch(batch_number, manufacturer_address=manufacturer)
    return jsonify(build_token_metadata(batch, request.host_url))

@token_bp.route('/inventory/<address>', methods=['GET'])
def inventory(address):
    """Ledger balances held by an address"""
    tokens = get_engine().get_inventory(address)
    return jsonify({'success': True, 'address': address.lower(), 'tokens': tokens})
