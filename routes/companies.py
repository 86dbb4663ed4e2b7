from flask import Blueprint, jsonify, request

from services.batch_repository import BatchRepository
from services.partner_directory import PartnerDirectory
from utils.api_utils import get_json_body

companies_bp = Blueprint('companies', __name__, url_prefix='/api/companies')

@companies_bp.route('', methods=['POST'])
def register_company():
    company = BatchRepository().register_company(get_json_body())
    return jsonify({'success': True, 'company': company.to_dict()}), 201

@companies_bp.route('', methods=['GET'])
def list_companies():
    companies = BatchRepository().list_companies(company_type=request.args.get('type'))
    return jsonify({'success': True, 'companies': [c.to_dict() for c in companies]})

@companies_bp.route('/search', methods=['GET'])
def search_companies():
    """Case-insensitive name search; needs at least two characters"""
    limit = request.args.get('limit', 10, type=int)
    companies = PartnerDirectory().search_companies(request.args.get('q', ''), limit=limit)
    return jsonify({'success': True, 'companies': [c.to_dict() for c in companies]})

@companies_bp.route('/<address>', methods=['GET'])
def get_company(address):
    return jsonify({'success': True, 'company': BatchRepository().get_company(address).to_dict()})
