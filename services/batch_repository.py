"""
Batch Repository
Persistence for companies, plants, product templates, batches and their components.
No ledger calls originate here.
"""

import json
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from config import REQUIRE_COMPONENTS_FOR_ASSEMBLIES
from models import db
from models.company import Company
from models.plant import Plant
from models.product import ProductTemplate, ProductBatch, BatchComponent
from services.exceptions import (
    AlreadyMinted, Conflict, DuplicateBatchNumber, DuplicateName, NotFound,
    TemplateNotFound, ValidationError,
)
from utils.carbon_utils import batch_carbon_kg, component_carbon_share
from utils.session_utils import normalize_address

logger = logging.getLogger(__name__)

COMPANY_TYPES = ('Manufacturer', 'Retailer', 'Logistics')


def positive_int(value, field):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer")
    if isinstance(value, float) and value != number:
        raise ValidationError(f"{field} must be a positive integer")
    if number <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return number


def _positive_float(value, field):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive number")
    if number <= 0:
        raise ValidationError(f"{field} must be a positive number")
    return number


def _parse_date(value, field):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value)
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date")


def _missing(data, fields):
    return [f for f in fields if data.get(f) in (None, '')]


def _normalize_materials(materials):
    if isinstance(materials, str):
        materials = [m.strip() for m in materials.split(',')]
    if not isinstance(materials, (list, tuple)):
        raise ValidationError("materials must be a list or a comma-separated string")
    materials = [str(m).strip() for m in materials if str(m).strip()]
    if not materials:
        raise ValidationError("At least one material is required")
    return materials


class BatchRepository:
    """Document store for the composition graph"""

    # Companies

    def register_company(self, data):
        missing = _missing(data, ['wallet_address', 'company_name', 'company_address', 'company_type'])
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        address = normalize_address(data['wallet_address'], 'wallet_address')
        if data['company_type'] not in COMPANY_TYPES:
            raise ValidationError(f"company_type must be one of {', '.join(COMPANY_TYPES)}")
        if Company.query.filter_by(wallet_address=address).first():
            raise Conflict(f"Company already registered for {address}")

        company = Company(
            wallet_address=address,
            company_name=data['company_name'].strip(),
            company_address=data['company_address'],
            company_type=data['company_type'],
            company_scale=data.get('company_scale'),
            zip_code=data.get('zip_code'),
            website=data.get('website'),
            email=data.get('email'),
            phone=data.get('phone'),
            logo_url=data.get('logo_url'),
        )
        db.session.add(company)
        db.session.commit()
        logger.info(f"Registered company {company.company_name} ({address})")
        return company

    def get_company(self, address):
        company = Company.query.filter_by(wallet_address=(address or '').lower()).first()
        if not company:
            raise NotFound(f"Company {address} not found")
        return company

    def list_companies(self, company_type=None):
        query = Company.query
        if company_type:
            query = query.filter_by(company_type=company_type)
        return query.order_by(Company.company_name).all()

    # Plants

    def create_plant(self, data):
        missing = _missing(data, ['name', 'code', 'company_address', 'address', 'city', 'country'])
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if data.get('latitude') is None or data.get('longitude') is None:
            raise ValidationError("Plant coordinates (latitude, longitude) are required")
        company_address = normalize_address(data['company_address'], 'company_address')
        self.get_company(company_address)

        code = data['code'].strip()
        if Plant.query.filter_by(company_address=company_address, code=code).first():
            raise Conflict(f"Plant code {code} already exists for this company")

        plant = Plant(
            name=data['name'].strip(),
            code=code,
            description=data.get('description'),
            company_address=company_address,
            address=data['address'],
            city=data['city'],
            state=data.get('state'),
            country=data['country'],
            postal_code=data.get('postal_code'),
            latitude=self._coordinate(data['latitude'], 'latitude', 90),
            longitude=self._coordinate(data['longitude'], 'longitude', 180),
            is_active=data.get('is_active', True),
        )
        db.session.add(plant)
        db.session.commit()
        logger.info(f"Created plant {plant.code} for {company_address}")
        return plant.id

    def update_plant(self, plant_id, changes):
        plant = self.get_plant(plant_id)
        if 'code' in changes and changes['code'] != plant.code:
            if Plant.query.filter_by(company_address=plant.company_address, code=changes['code']).first():
                raise Conflict(f"Plant code {changes['code']} already exists for this company")
            plant.code = changes['code']
        for field in ('name', 'description', 'address', 'city', 'state', 'country', 'postal_code', 'is_active'):
            if field in changes:
                setattr(plant, field, changes[field])
        if 'latitude' in changes:
            plant.latitude = self._coordinate(changes['latitude'], 'latitude', 90)
        if 'longitude' in changes:
            plant.longitude = self._coordinate(changes['longitude'], 'longitude', 180)
        db.session.commit()
        return plant

    def delete_plant(self, plant_id):
        plant = self.get_plant(plant_id)
        if ProductBatch.query.filter_by(plant_id=plant.id).first():
            raise Conflict("Plant is referenced by existing batches")
        db.session.delete(plant)
        db.session.commit()

    def get_plant(self, plant_id):
        plant = db.session.get(Plant, plant_id)
        if not plant:
            raise NotFound(f"Plant {plant_id} not found")
        return plant

    def list_plants(self, company_address=None, active_only=False):
        query = Plant.query
        if company_address:
            query = query.filter_by(company_address=company_address.lower())
        if active_only:
            query = query.filter_by(is_active=True)
        return query.order_by(Plant.created_at.desc()).all()

    @staticmethod
    def _coordinate(value, field, bound):
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a number")
        if not -bound <= number <= bound:
            raise ValidationError(f"{field} out of range")
        return number

    # Templates

    def create_template(self, data):
        missing = _missing(data, ['name', 'description', 'category', 'manufacturer_address'])
        specs = data.get('specifications') or {}
        missing += [f for f in ('weight', 'materials', 'carbon_footprint_per_unit') if specs.get(f) in (None, '', [])]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        manufacturer = normalize_address(data['manufacturer_address'], 'manufacturer_address')
        company = self.get_company(manufacturer)
        name = data['name'].strip()
        if ProductTemplate.query.filter_by(name=name, manufacturer_address=manufacturer).first():
            raise DuplicateName(f"Template '{name}' already exists for this manufacturer")

        dimensions = specs.get('dimensions') or {}
        template = ProductTemplate(
            name=name,
            description=data['description'],
            category=data['category'],
            is_raw_material=bool(data.get('is_raw_material', False)),
            manufacturer_address=manufacturer,
            image_url=data.get('image_url'),
            weight=_positive_float(specs['weight'], 'weight'),
            length=dimensions.get('length'),
            width=dimensions.get('width'),
            height=dimensions.get('height'),
            materials=json.dumps(_normalize_materials(specs['materials'])),
            carbon_footprint_per_unit=_positive_float(specs['carbon_footprint_per_unit'], 'carbon_footprint_per_unit'),
            is_active=True,
        )
        db.session.add(template)
        try:
            db.session.flush()
            company.add_template_id(template.id)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateName(f"Template '{name}' already exists for this manufacturer")
        logger.info(f"Created template {template.id} '{name}' for {manufacturer}")
        return template.id

    def update_template(self, template_id, changes):
        template = self.get_template(template_id)
        if 'name' in changes and changes['name'].strip() != template.name:
            name = changes['name'].strip()
            if ProductTemplate.query.filter_by(name=name, manufacturer_address=template.manufacturer_address).first():
                raise DuplicateName(f"Template '{name}' already exists for this manufacturer")
            template.name = name
        for field in ('description', 'category', 'image_url'):
            if field in changes:
                setattr(template, field, changes[field])
        if 'is_raw_material' in changes:
            template.is_raw_material = bool(changes['is_raw_material'])
        if 'is_active' in changes:
            template.is_active = bool(changes['is_active'])

        specs = changes.get('specifications') or {}
        if 'weight' in specs:
            template.weight = _positive_float(specs['weight'], 'weight')
        if 'materials' in specs:
            template.materials = json.dumps(_normalize_materials(specs['materials']))
        if 'carbon_footprint_per_unit' in specs:
            template.carbon_footprint_per_unit = _positive_float(specs['carbon_footprint_per_unit'],
                                                                 'carbon_footprint_per_unit')
        if 'dimensions' in specs:
            dimensions = specs['dimensions'] or {}
            template.length = dimensions.get('length')
            template.width = dimensions.get('width')
            template.height = dimensions.get('height')
        db.session.commit()
        return template

    def deactivate_template(self, template_id):
        template = self.get_template(template_id)
        template.is_active = False
        db.session.commit()
        return template

    def delete_template(self, template_id):
        template = self.get_template(template_id)
        if ProductBatch.query.filter_by(template_id=template.id).first():
            raise Conflict("Template is referenced by existing batches; deactivate it instead")
        company = Company.query.filter_by(wallet_address=template.manufacturer_address).first()
        if company:
            company.remove_template_id(template.id)
        db.session.delete(template)
        db.session.commit()
        logger.info(f"Deleted template {template_id}")

    def get_template(self, template_id):
        template = db.session.get(ProductTemplate, template_id)
        if not template:
            raise TemplateNotFound(f"Template {template_id} not found")
        return template

    def list_templates(self, manufacturer_address=None, category=None, is_active=None):
        query = ProductTemplate.query
        if manufacturer_address:
            query = query.filter_by(manufacturer_address=manufacturer_address.lower())
        if category:
            query = query.filter_by(category=category)
        if is_active is not None:
            query = query.filter_by(is_active=is_active)
        return query.order_by(ProductTemplate.created_at.desc()).all()

    # Batches

    def create_batch(self, data, require_components=REQUIRE_COMPONENTS_FOR_ASSEMBLIES):
        missing = _missing(data, ['batch_number', 'template_id', 'quantity', 'production_date',
                                  'manufacturer_address', 'plant_id'])
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        batch_number = positive_int(data['batch_number'], 'batch_number')
        quantity = positive_int(data['quantity'], 'quantity')
        manufacturer = normalize_address(data['manufacturer_address'], 'manufacturer_address')
        production_date = _parse_date(data['production_date'], 'production_date')
        expiry_date = _parse_date(data.get('expiry_date'), 'expiry_date')
        if expiry_date and expiry_date < production_date:
            raise ValidationError("expiry_date cannot be before production_date")

        template = db.session.get(ProductTemplate, positive_int(data['template_id'], 'template_id'))
        if not template or not Company.query.filter_by(wallet_address=template.manufacturer_address).first():
            raise TemplateNotFound(f"Product template {data['template_id']} not found")
        if not template.is_active:
            raise ValidationError(f"Product template {template.id} is inactive")

        plant = self.get_plant(positive_int(data['plant_id'], 'plant_id'))
        if plant.company_address != manufacturer:
            raise ValidationError(f"Plant {plant.id} does not belong to {manufacturer}")

        if ProductBatch.query.filter_by(batch_number=batch_number, manufacturer_address=manufacturer).first():
            raise DuplicateBatchNumber(f"Batch with number {batch_number} already exists for this manufacturer")

        declared = data.get('components') or []
        if not isinstance(declared, list):
            raise ValidationError("components must be a list")
        if require_components and not template.is_raw_material and not declared:
            raise ValidationError("Batches of non-raw-material templates must declare at least one component")

        components = [self._build_component(position, entry) for position, entry in enumerate(declared)]

        carbon = data.get('carbon_footprint')
        if carbon in (None, ''):
            carbon = batch_carbon_kg(template.carbon_footprint_per_unit, quantity,
                                     [c.carbon_footprint for c in components])
        else:
            carbon = positive_int(carbon, 'carbon_footprint')

        batch = ProductBatch(
            batch_number=batch_number,
            template_id=template.id,
            quantity=quantity,
            production_date=production_date,
            expiry_date=expiry_date,
            carbon_footprint=carbon,
            manufacturer_address=manufacturer,
            plant_id=plant.id,
            components=components,
        )
        db.session.add(batch)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateBatchNumber(f"Batch with number {batch_number} already exists for this manufacturer")
        logger.info(f"Created batch #{batch_number} ({batch.id}) for {manufacturer}: "
                    f"{quantity} units, {carbon} kg CO2e, {len(components)} component(s)")
        return batch.id

    def _build_component(self, position, entry):
        if not isinstance(entry, dict):
            raise ValidationError("Each component must be an object with token_id and quantity")
        token_id = positive_int(entry.get('token_id'), 'component token_id')
        quantity = positive_int(entry.get('quantity'), 'component quantity')
        source = ProductBatch.query.filter_by(token_id=token_id).first()
        if not source:
            raise ValidationError(f"Component token {token_id} does not reference a minted batch")

        name = entry.get('token_name')
        if not name:
            source_template = db.session.get(ProductTemplate, source.template_id)
            name = source_template.name if source_template else f"Token #{token_id}"
        return BatchComponent(
            position=position,
            token_id=token_id,
            token_name=name,
            quantity=quantity,
            carbon_footprint=component_carbon_share(source.carbon_footprint, source.quantity, quantity),
            consumed=False,
        )

    def get_batch(self, batch_id):
        batch = db.session.get(ProductBatch, batch_id)
        if not batch:
            raise NotFound(f"Batch {batch_id} not found")
        return batch

    def get_batch_by_token(self, token_id):
        batch = ProductBatch.query.filter_by(token_id=token_id).first()
        if not batch:
            raise NotFound(f"No batch recorded for token {token_id}")
        return batch

    def find_batch(self, ref, manufacturer_address=None):
        """Look a batch up by id, or by batch number when a manufacturer is given"""
        if manufacturer_address:
            batch = ProductBatch.query.filter_by(batch_number=int(ref),
                                                 manufacturer_address=manufacturer_address.lower()).first()
            if not batch:
                raise NotFound(f"Batch #{ref} not found for {manufacturer_address}")
            return batch
        return self.get_batch(int(ref))

    def list_batches(self, manufacturer_address=None, template_id=None, minted=None):
        query = ProductBatch.query
        if manufacturer_address:
            query = query.filter_by(manufacturer_address=manufacturer_address.lower())
        if template_id is not None:
            query = query.filter_by(template_id=template_id)
        if minted is True:
            query = query.filter(ProductBatch.token_id.isnot(None))
        elif minted is False:
            query = query.filter(ProductBatch.token_id.is_(None))
        return query.order_by(ProductBatch.created_at.desc()).all()

    def record_mint_result(self, batch_id, token_id, tx_hash, block_number=None,
                           consumed_components=(), contract_address=None):
        """Attach ledger results to a batch. Repeating the same result changes nothing."""
        batch = self.get_batch(batch_id)
        token_id = positive_int(token_id, 'token_id')

        if batch.token_id is not None:
            if batch.token_id != token_id:
                raise AlreadyMinted(f"Batch {batch.id} is already minted as token {batch.token_id}")
            if not batch.transaction_hash and tx_hash:
                batch.transaction_hash = tx_hash
            if batch.block_number is None and block_number is not None:
                batch.block_number = block_number
            self._apply_burns(batch, consumed_components)
            if db.session.dirty:
                db.session.commit()
            return batch

        owner = ProductBatch.query.filter_by(token_id=token_id).first()
        if owner:
            raise Conflict(f"Token {token_id} is already recorded for batch {owner.id}")

        batch.token_id = token_id
        batch.transaction_hash = tx_hash
        batch.block_number = block_number
        batch.token_contract_address = contract_address.lower() if contract_address else None
        batch.minted_at = datetime.utcnow()
        self._apply_burns(batch, consumed_components)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict(f"Token {token_id} is already recorded for another batch")
        logger.info(f"Recorded mint of batch {batch.id} as token {token_id} ({tx_hash})")
        return batch

    def record_component_burns(self, batch_id, consumed_components):
        """Persist component burns executed before a mint completed"""
        batch = self.get_batch(batch_id)
        self._apply_burns(batch, consumed_components)
        if db.session.dirty:
            db.session.commit()
        return batch

    @staticmethod
    def _apply_burns(batch, consumed_components):
        for burn in consumed_components or ():
            if not isinstance(burn, dict):
                burn = {'token_id': burn}
            component = None
            if burn.get('position') is not None:
                component = next((c for c in batch.components if c.position == burn['position']), None)
            if component is None:
                component = next((c for c in batch.components
                                  if c.token_id == burn.get('token_id') and not c.consumed), None)
            if component is None or component.consumed:
                continue
            if burn.get('tx_hash'):
                component.burn_transaction_hash = burn['tx_hash']
            # Submitted but unconfirmed: keep the hash, leave it unconsumed
            if not burn.get('pending'):
                component.consumed = True
