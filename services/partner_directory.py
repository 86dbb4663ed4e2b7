"""
Partner Directory
Bidirectional trading relationships between companies, plus company search
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from models import db
from models.company import Company
from models.partner import Partner
from services.exceptions import Conflict, NotFound, ValidationError
from utils.session_utils import normalize_address

logger = logging.getLogger(__name__)

RELATIONSHIPS = ('supplier', 'customer')
STATUSES = ('active', 'inactive')
INVERSE = {'supplier': 'customer', 'customer': 'supplier'}
MIN_SEARCH_LENGTH = 2


class PartnerDirectory:
    """Each relationship is stored once per side; both sides are written together"""

    def add_partner(self, self_address, partner_address, relationship, display_name=None):
        if not self_address or not partner_address or not relationship:
            raise ValidationError("Self address, partner address, and relationship are required")
        own = normalize_address(self_address, 'self_address')
        other = normalize_address(partner_address, 'partner_address')
        if own == other:
            raise ValidationError("Cannot add yourself as a partner")
        if relationship not in RELATIONSHIPS:
            raise ValidationError("Relationship must be either 'supplier' or 'customer'")
        if Partner.query.filter_by(self_address=own, partner_address=other).first():
            raise Conflict("Partner relationship already exists")

        partner_company = Company.query.filter_by(wallet_address=other).first()
        own_company = Company.query.filter_by(wallet_address=own).first()
        now = datetime.utcnow()

        forward = Partner(
            self_address=own,
            partner_address=other,
            relationship=relationship,
            display_name=display_name or (partner_company.company_name if partner_company else None),
            status='active',
            created_at=now,
            updated_at=now,
        )
        db.session.add(forward)

        # The partner may already hold a record pointing back at us
        reverse = Partner.query.filter_by(self_address=other, partner_address=own).first()
        if reverse:
            reverse.relationship = INVERSE[relationship]
            reverse.status = 'active'
            if own_company and not reverse.display_name:
                reverse.display_name = own_company.company_name
        else:
            db.session.add(Partner(
                self_address=other,
                partner_address=own,
                relationship=INVERSE[relationship],
                display_name=own_company.company_name if own_company else None,
                status='active',
                created_at=now,
                updated_at=now,
            ))

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict("Partner relationship already exists")
        logger.info(f"Partner relationship created: {own} -> {other} ({relationship})")
        return forward

    def list_partners(self, self_address, relationship=None, status='active'):
        if not self_address:
            raise ValidationError("Self address is required")
        query = Partner.query.filter_by(self_address=self_address.lower())
        if relationship:
            query = query.filter_by(relationship=relationship)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Partner.created_at.desc(), Partner.id.desc()).all()

    def get_partner(self, partner_id):
        partner = db.session.get(Partner, partner_id)
        if not partner:
            raise NotFound(f"Partner {partner_id} not found")
        return partner

    def update_partner(self, partner_id, display_name=None, status=None):
        partner = self.get_partner(partner_id)
        if display_name is not None:
            partner.display_name = display_name
        if status is not None:
            if status not in STATUSES:
                raise ValidationError("Status must be either 'active' or 'inactive'")
            partner.status = status
            mirror = self._mirror(partner)
            if mirror:
                mirror.status = status
        db.session.commit()
        return partner

    def remove_partner(self, partner_id):
        partner = self.get_partner(partner_id)
        pair = (partner.self_address, partner.partner_address)
        mirror = self._mirror(partner)
        db.session.delete(partner)
        if mirror:
            db.session.delete(mirror)
        db.session.commit()
        logger.info(f"Partner relationship removed: {pair[0]} <-> {pair[1]}")

    def get_active_partner(self, self_address, partner_address):
        """Active relationship from self to partner, of either kind, or None"""
        return Partner.query.filter_by(
            self_address=self_address.lower(),
            partner_address=partner_address.lower(),
            status='active',
        ).first()

    def search_companies(self, query, limit=10):
        if not query or len(query.strip()) < MIN_SEARCH_LENGTH:
            return []
        pattern = f"%{query.strip()}%"
        return (Company.query
                .filter(Company.company_name.ilike(pattern))
                .order_by(Company.company_name)
                .limit(limit)
                .all())

    @staticmethod
    def _mirror(partner):
        return Partner.query.filter_by(self_address=partner.partner_address,
                                       partner_address=partner.self_address).first()
