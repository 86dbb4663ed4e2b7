from flask import Blueprint, jsonify, request

from services.batch_repository import BatchRepository
from utils.api_utils import arg_bool, get_json_body
from utils.session_utils import get_caller_address

templates_bp = Blueprint('templates', __name__, url_prefix='/api/templates')

@templates_bp.route('', methods=['POST'])
def create_template():
    data = get_json_body()
    if not data.get('manufacturer_address'):
        data['manufacturer_address'] = get_caller_address()
    repository = BatchRepository()
    template_id = repository.create_template(data)
    return jsonify({'success': True, 'template': repository.get_template(template_id).to_dict()}), 201

@templates_bp.route('', methods=['GET'])
def list_templates():
    templates = BatchRepository().list_templates(
        manufacturer_address=request.args.get('manufacturer'),
        category=request.args.get('category'),
        is_active=arg_bool('is_active'),
    )
    return jsonify({'success': True, 'templates': [t.to_dict() for t in templates]})

@templates_bp.route('/<int:template_id>', methods=['GET'])
def get_template(template_id):
    return jsonify({'success': True, 'template': BatchRepository().get_template(template_id).to_dict()})

@templates_bp.route('/<int:template_id>', methods=['PUT'])
def update_template(template_id):
    template = BatchRepository().update_template(template_id, get_json_body())
    return jsonify({'success': True, 'template': template.to_dict()})

@templates_bp.route('/<int:template_id>', methods=['DELETE'])
def delete_template(template_id):
    """Hard delete; `?soft=true` deactivates instead"""
    repository = BatchRepository()
    if arg_bool('soft'):
        template = repository.deactivate_template(template_id)
        return jsonify({'success': True, 'template': template.to_dict()})
    repository.delete_template(template_id)
    return jsonify({'success': True, 'message': 'Template deleted'})
