from flask import Blueprint, jsonify, request

from services.exceptions import ValidationError
from services.transaction_indexer import TransactionIndexer
from utils.api_utils import get_engine, get_json_body
from utils.session_utils import get_caller_address, normalize_address

transfers_bp = Blueprint('transfers', __name__, url_prefix='/api/transfers')

@transfers_bp.route('', methods=['POST'])
def transfer_tokens():
    """Transfer tokens to an active partner and journal the transaction"""
    data = get_json_body()
    sender = get_caller_address()
    if not data.get('to') or not data.get('token_id') or not data.get('quantity'):
        raise ValidationError('Missing required fields: to, token_id, quantity')
    result = get_engine().transfer_tokens(sender, data['to'], data['token_id'], data['quantity'],
                                          reason=data.get('reason', ''))
    body = {'success': True}
    body.update(result)
    return jsonify(body), 201

@transfers_bp.route('/record', methods=['POST'])
def record_transfer():
    """Journal a transfer signed outside the service"""
    data = get_json_body()
    missing = [f for f in ('from_address', 'to_address', 'token_id', 'quantity', 'tx_hash') if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    transfer = TransactionIndexer().record_transfer(
        normalize_address(data['from_address'], 'from_address'),
        normalize_address(data['to_address'], 'to_address'),
        data['token_id'],
        data['quantity'],
        data['tx_hash'],
        reason=data.get('reason'),
        block_number=data.get('block_number'),
        gas_used=data.get('gas_used'),
        status=data.get('status', 'pending'),
    )
    return jsonify({'success': True, 'transfer': transfer.to_dict()}), 201

@transfers_bp.route('', methods=['GET'])
def list_transfers():
    address = request.args.get('address') or get_caller_address(required=False)
    transfers = TransactionIndexer().list_transfers(
        address=address,
        from_address=request.args.get('from'),
        to_address=request.args.get('to'),
        token_id=request.args.get('token_id', type=int),
    )
    return jsonify({'success': True, 'transfers': [t.to_dict() for t in transfers]})
