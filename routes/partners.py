from flask import Blueprint, jsonify, request

from services.partner_directory import PartnerDirectory
from utils.api_utils import get_json_body
from utils.session_utils import get_caller_address

partners_bp = Blueprint('partners', __name__, url_prefix='/api/partners')

@partners_bp.route('', methods=['POST'])
def add_partner():
    """Create a relationship and its mirror for the partner"""
    data = get_json_body()
    self_address = data.get('self_address') or get_caller_address()
    partner = PartnerDirectory().add_partner(
        self_address,
        data.get('partner_address'),
        data.get('relationship'),
        display_name=data.get('display_name'),
    )
    return jsonify({'success': True, 'message': 'Partner relationship created successfully',
                    'partner': partner.to_dict()}), 201

@partners_bp.route('', methods=['GET'])
def list_partners():
    self_address = request.args.get('self_address') or get_caller_address()
    partners = PartnerDirectory().list_partners(
        self_address,
        relationship=request.args.get('relationship'),
        status=request.args.get('status', 'active'),
    )
    return jsonify({'success': True, 'partners': [p.to_dict() for p in partners]})

@partners_bp.route('/<int:partner_id>', methods=['GET'])
def get_partner(partner_id):
    return jsonify({'success': True, 'partner': PartnerDirectory().get_partner(partner_id).to_dict()})

@partners_bp.route('/<int:partner_id>', methods=['PUT'])
def update_partner(partner_id):
    data = get_json_body()
    partner = PartnerDirectory().update_partner(partner_id, display_name=data.get('display_name'),
                                                status=data.get('status'))
    return jsonify({'success': True, 'partner': partner.to_dict()})

@partners_bp.route('/<int:partner_id>', methods=['DELETE'])
def remove_partner(partner_id):
    PartnerDirectory().remove_partner(partner_id)
    return jsonify({'success': True, 'message': 'Partner relationship removed'})
