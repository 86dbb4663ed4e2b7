from datetime import datetime
from . import db

class Partner(db.Model):
    """One direction of a trading relationship between two addresses"""
    id = db.Column(db.Integer, primary_key=True)
    self_address = db.Column(db.String(42), nullable=False)
    partner_address = db.Column(db.String(42), nullable=False)
    relationship = db.Column(db.String(20), nullable=False)  # 'supplier', 'customer'
    display_name = db.Column(db.String(200))
    status = db.Column(db.String(20), default='active')  # 'active', 'inactive'
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('self_address', 'partner_address', name='_self_partner_uc'),)

    def to_dict(self):
        return {
            'id': self.id,
            'self_address': self.self_address,
            'partner_address': self.partner_address,
            'relationship': self.relationship,
            'display_name': self.display_name,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<Partner {self.self_address} -> {self.partner_address} ({self.relationship})>'
