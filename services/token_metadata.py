"""
Token Metadata
ERC-1155 metadata documents served at the URI recorded on mint
"""

from models import db
from models.product import ProductTemplate
from services.exceptions import DataIntegrityError
from utils.carbon_utils import format_tons


def build_token_metadata(batch, base_url):
    template = db.session.get(ProductTemplate, batch.template_id)
    if not template:
        raise DataIntegrityError(f"Product template {batch.template_id} not found for batch {batch.id}")

    carbon = f"{format_tons(batch.carbon_footprint)} tons CO₂"
    base_url = base_url.rstrip('/')
    return {
        'name': f"{template.name} - Batch #{batch.batch_number}",
        'description': (f"{template.description}\n\nBatch Number: {batch.batch_number}\n"
                        f"Quantity: {batch.quantity} units\nCarbon Footprint: {carbon}"),
        'image': template.image_url or f"{base_url}/static/placeholder.png",
        'external_url': f"{base_url}/api/tokens/{batch.token_id}" if batch.token_id else f"{base_url}/api/batches/{batch.id}",
        'attributes': [
            {'trait_type': 'Batch Number', 'value': batch.batch_number},
            {'trait_type': 'Template Name', 'value': template.name},
            {'trait_type': 'Category', 'value': template.category},
            {'trait_type': 'Quantity', 'value': batch.quantity},
            {'trait_type': 'Carbon Footprint', 'value': carbon},
            {'trait_type': 'Production Date', 'value': batch.production_date.date().isoformat()},
            {'trait_type': 'Is Raw Material', 'value': template.is_raw_material},
        ],
    }
