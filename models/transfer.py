from datetime import datetime
from . import db

class TokenTransfer(db.Model):
    """Journal entry for a ledger transfer, keyed by transaction hash"""
    id = db.Column(db.Integer, primary_key=True)
    from_address = db.Column(db.String(42), nullable=False)
    to_address = db.Column(db.String(42), nullable=False)
    token_id = db.Column(db.BigInteger, nullable=False)
    quantity = db.Column(db.BigInteger, nullable=False)
    reason = db.Column(db.String(500))
    transaction_hash = db.Column(db.String(66), unique=True, nullable=False)
    block_number = db.Column(db.Integer)
    gas_used = db.Column(db.Integer)
    status = db.Column(db.String(20), default='pending')  # 'pending', 'confirmed', 'failed'
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'from_address': self.from_address,
            'to_address': self.to_address,
            'token_id': self.token_id,
            'quantity': self.quantity,
            'reason': self.reason,
            'transaction_hash': self.transaction_hash,
            'block_number': self.block_number,
            'gas_used': self.gas_used,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<TokenTransfer {self.token_id} x{self.quantity} {self.transaction_hash}>'
