import json
from datetime import datetime
from . import db

class Contract(db.Model):
    """Registry of ledger contracts the service talks to"""
    id = db.Column(db.Integer, primary_key=True)
    contract_type = db.Column(db.String(50), nullable=False)  # 'SupplyChainTokens'
    contract_address = db.Column(db.String(42), nullable=False, unique=True)
    contract_name = db.Column(db.String(100), nullable=False)
    chain_id = db.Column(db.Integer)
    deployed_by = db.Column(db.String(42))
    deployed_at = db.Column(db.DateTime, default=datetime.utcnow)
    block_number = db.Column(db.Integer)
    transaction_hash = db.Column(db.String(66))
    is_active = db.Column(db.Boolean, default=True)
    contract_metadata = db.Column(db.Text)  # JSON string

    def get_metadata(self):
        return json.loads(self.contract_metadata) if self.contract_metadata else {}

    def __repr__(self):
        return f'<Contract {self.contract_name} at {self.contract_address}>'
