import json
from datetime import datetime
from . import db

class ProductTemplate(db.Model):
    """Reusable product definition owned by a manufacturer"""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(100), nullable=False)
    is_raw_material = db.Column(db.Boolean, default=False)
    manufacturer_address = db.Column(db.String(42), nullable=False)
    image_url = db.Column(db.String(500))

    # Specifications
    weight = db.Column(db.Float, nullable=False)
    length = db.Column(db.Float)
    width = db.Column(db.Float)
    height = db.Column(db.Float)
    materials = db.Column(db.Text, default='[]')  # JSON array of material names
    carbon_footprint_per_unit = db.Column(db.Float, nullable=False)  # Tons CO2e per unit

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('name', 'manufacturer_address', name='_template_name_manufacturer_uc'),)

    def get_materials(self):
        return json.loads(self.materials) if self.materials else []

    def to_dict(self):
        dimensions = None
        if self.length is not None or self.width is not None or self.height is not None:
            dimensions = {'length': self.length, 'width': self.width, 'height': self.height}
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'is_raw_material': self.is_raw_material,
            'manufacturer_address': self.manufacturer_address,
            'image_url': self.image_url,
            'specifications': {
                'weight': self.weight,
                'dimensions': dimensions,
                'materials': self.get_materials(),
                'carbon_footprint_per_unit': self.carbon_footprint_per_unit,
            },
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<ProductTemplate {self.name} by {self.manufacturer_address}>'


class ProductBatch(db.Model):
    """Production run of a template; becomes a ledger token once minted"""
    id = db.Column(db.Integer, primary_key=True)
    batch_number = db.Column(db.BigInteger, nullable=False)  # Unique per manufacturer
    template_id = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.BigInteger, nullable=False)
    production_date = db.Column(db.DateTime, nullable=False)
    expiry_date = db.Column(db.DateTime)
    carbon_footprint = db.Column(db.BigInteger, nullable=False, default=0)  # Integer kg CO2e for the whole batch
    manufacturer_address = db.Column(db.String(42), nullable=False)
    plant_id = db.Column(db.Integer, nullable=False)
    # Note: template and plant are plain ids so a dangling reference surfaces as a data-integrity error

    # Ledger fields, set once when minted
    token_id = db.Column(db.BigInteger, unique=True, nullable=True)
    token_contract_address = db.Column(db.String(42))
    transaction_hash = db.Column(db.String(66))
    block_number = db.Column(db.Integer)
    minted_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    components = db.relationship('BatchComponent', backref='batch', order_by='BatchComponent.position',
                                 cascade='all, delete-orphan')

    __table_args__ = (db.UniqueConstraint('batch_number', 'manufacturer_address', name='_batch_number_manufacturer_uc'),)

    @property
    def is_minted(self):
        return self.token_id is not None

    def to_dict(self):
        return {
            'id': self.id,
            'batch_number': self.batch_number,
            'template_id': self.template_id,
            'quantity': self.quantity,
            'production_date': self.production_date.isoformat() if self.production_date else None,
            'expiry_date': self.expiry_date.isoformat() if self.expiry_date else None,
            'carbon_footprint': self.carbon_footprint,
            'manufacturer_address': self.manufacturer_address,
            'plant_id': self.plant_id,
            'components': [c.to_dict() for c in self.components],
            'token_id': self.token_id,
            'token_contract_address': self.token_contract_address,
            'transaction_hash': self.transaction_hash,
            'block_number': self.block_number,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<ProductBatch #{self.batch_number} by {self.manufacturer_address}>'


class BatchComponent(db.Model):
    """Quantity of a minted component token declared as input to a batch"""
    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey('product_batch.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)  # Declaration order
    token_id = db.Column(db.BigInteger, nullable=False)
    token_name = db.Column(db.String(200))  # Display-name snapshot
    quantity = db.Column(db.BigInteger, nullable=False)
    carbon_footprint = db.Column(db.BigInteger, nullable=False, default=0)  # Attributed kg CO2e
    consumed = db.Column(db.Boolean, default=False)
    burn_transaction_hash = db.Column(db.String(66))

    def to_dict(self):
        return {
            'token_id': self.token_id,
            'token_name': self.token_name,
            'quantity': self.quantity,
            'carbon_footprint': self.carbon_footprint,
            'consumed': self.consumed,
            'burn_transaction_hash': self.burn_transaction_hash,
        }

    def __repr__(self):
        return f'<BatchComponent token {self.token_id} x{self.quantity}>'
