from flask import Blueprint, jsonify, request

from services.batch_repository import BatchRepository
from utils.api_utils import arg_bool, get_json_body
from utils.session_utils import get_caller_address

plants_bp = Blueprint('plants', __name__, url_prefix='/api/plants')

@plants_bp.route('', methods=['POST'])
def create_plant():
    data = get_json_body()
    if not data.get('company_address'):
        data['company_address'] = get_caller_address()
    repository = BatchRepository()
    plant_id = repository.create_plant(data)
    return jsonify({'success': True, 'plant': repository.get_plant(plant_id).to_dict()}), 201

@plants_bp.route('', methods=['GET'])
def list_plants():
    company = request.args.get('company') or get_caller_address(required=False)
    plants = BatchRepository().list_plants(company_address=company, active_only=bool(arg_bool('active')))
    return jsonify({'success': True, 'plants': [p.to_dict() for p in plants]})

@plants_bp.route('/<int:plant_id>', methods=['GET'])
def get_plant(plant_id):
    return jsonify({'success': True, 'plant': BatchRepository().get_plant(plant_id).to_dict()})

@plants_bp.route('/<int:plant_id>', methods=['PUT'])
def update_plant(plant_id):
    plant = BatchRepository().update_plant(plant_id, get_json_body())
    return jsonify({'success': True, 'plant': plant.to_dict()})

@plants_bp.route('/<int:plant_id>', methods=['DELETE'])
def delete_plant(plant_id):
    BatchRepository().delete_plant(plant_id)
    return jsonify({'success': True, 'message': 'Plant deleted'})
