import json
from datetime import datetime
from . import db

class Company(db.Model):
    """Registered supply-chain participant, keyed by wallet address"""
    id = db.Column(db.Integer, primary_key=True)
    wallet_address = db.Column(db.String(42), unique=True, nullable=False)  # Lower-cased
    company_name = db.Column(db.String(200), nullable=False)
    company_address = db.Column(db.String(300), nullable=False)
    company_type = db.Column(db.String(20), nullable=False)  # 'Manufacturer', 'Retailer', 'Logistics'
    company_scale = db.Column(db.String(50))
    zip_code = db.Column(db.String(20))
    website = db.Column(db.String(200))
    email = db.Column(db.String(120))
    phone = db.Column(db.String(40))
    logo_url = db.Column(db.String(500))
    product_templates = db.Column(db.Text, default='[]')  # JSON array of owned template ids
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def get_template_ids(self):
        return json.loads(self.product_templates) if self.product_templates else []

    def add_template_id(self, template_id):
        ids = self.get_template_ids()
        if template_id not in ids:
            ids.append(template_id)
            self.product_templates = json.dumps(ids)

    def remove_template_id(self, template_id):
        ids = [i for i in self.get_template_ids() if i != template_id]
        self.product_templates = json.dumps(ids)

    def to_dict(self):
        return {
            'id': self.id,
            'wallet_address': self.wallet_address,
            'company_name': self.company_name,
            'company_address': self.company_address,
            'company_type': self.company_type,
            'company_scale': self.company_scale,
            'zip_code': self.zip_code,
            'website': self.website,
            'email': self.email,
            'phone': self.phone,
            'logo_url': self.logo_url,
            'product_templates': self.get_template_ids(),
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Company {self.company_name} at {self.wallet_address}>'
