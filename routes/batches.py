from flask import Blueprint, current_app, jsonify, request

from services.batch_repository import BatchRepository
from services.exceptions import ValidationError
from utils.api_utils import arg_bool, get_engine, get_json_body
from utils.session_utils import get_caller_address

batches_bp = Blueprint('batches', __name__, url_prefix='/api/batches')

@batches_bp.route('', methods=['POST'])
def create_batch():
    """Create an unminted batch"""
    data = get_json_body()
    if not data.get('manufacturer_address'):
        data['manufacturer_address'] = get_caller_address()
    repository = BatchRepository()
    batch_id = repository.create_batch(
        data, require_components=current_app.config['REQUIRE_COMPONENTS_FOR_ASSEMBLIES']
    )
    batch = repository.get_batch(batch_id)
    return jsonify({'success': True, 'batch': batch.to_dict()}), 201

@batches_bp.route('', methods=['GET'])
def list_batches():
    template_id = request.args.get('template_id', type=int)
    batches = BatchRepository().list_batches(
        manufacturer_address=request.args.get('manufacturer'),
        template_id=template_id,
        minted=arg_bool('minted'),
    )
    return jsonify({'success': True, 'batches': [b.to_dict() for b in batches]})

@batches_bp.route('/unrecorded', methods=['GET'])
def unrecorded_batches():
    """Batches present on the ledger but never recorded locally"""
    manufacturer = request.args.get('manufacturer') or get_caller_address()
    return jsonify({'success': True, 'batches': get_engine().find_unrecorded_mints(manufacturer)})

@batches_bp.route('/<int:batch_id>', methods=['GET'])
def get_batch(batch_id):
    batch = BatchRepository().get_batch(batch_id)
    return jsonify({'success': True, 'batch': batch.to_dict()})

@batches_bp.route('/<int:batch_id>/mint', methods=['POST'])
def mint_batch(batch_id):
    """Burn components, mint the batch token and record the result"""
    sender = get_caller_address()
    result = get_engine().mint_batch_with_components(batch_id, sender)
    return jsonify({'success': True, 'token_id': result['token_id'], 'tx_hash': result['tx_hash'],
                    'block_number': result['block_number'], 'burns': result['burns']})

@batches_bp.route('/<int:batch_id>/token', methods=['PUT'])
def record_mint(batch_id):
    """Record a mint submitted outside the service. Safe to repeat."""
    data = get_json_body()
    if not data.get('token_id') or not data.get('tx_hash'):
        raise ValidationError('Missing required fields: token_id, tx_hash')
    batch = BatchRepository().record_mint_result(
        batch_id,
        data['token_id'],
        data['tx_hash'],
        block_number=data.get('block_number'),
        consumed_components=data.get('consumed_components') or [],
        contract_address=data.get('contract_address'),
    )
    return jsonify({'success': True, 'batch': batch.to_dict()})

@batches_bp.route('/<int:batch_id>/recover', methods=['POST'])
def recover_mint(batch_id):
    """Record a mint from its transaction hash"""
    data = get_json_body()
    if not data.get('tx_hash'):
        raise ValidationError('Missing required field: tx_hash')
    result = get_engine().recover_mint(batch_id, data['tx_hash'])
    return jsonify({'success': True, 'token_id': result['token_id'], 'tx_hash': result['tx_hash']})
