from datetime import datetime
from . import db

class Plant(db.Model):
    """Production site owned by a company"""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(50), nullable=False)  # Unique per company
    description = db.Column(db.Text)
    company_address = db.Column(db.String(42), nullable=False)

    # Location
    address = db.Column(db.String(300), nullable=False)
    city = db.Column(db.String(100), nullable=False)
    state = db.Column(db.String(100))
    country = db.Column(db.String(100), nullable=False)
    postal_code = db.Column(db.String(20))
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('company_address', 'code', name='_company_plant_code_uc'),)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'description': self.description,
            'company_address': self.company_address,
            'location': {
                'address': self.address,
                'city': self.city,
                'state': self.state,
                'country': self.country,
                'postal_code': self.postal_code,
                'coordinates': {'latitude': self.latitude, 'longitude': self.longitude},
            },
            'is_active': self.is_active,
        }

    def __repr__(self):
        return f'<Plant {self.code} ({self.name})>'
