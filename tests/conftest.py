from collections import defaultdict
from datetime import datetime

import pytest

from app import create_app
from models import db
from services.batch_repository import BatchRepository
from services.exceptions import LedgerRejected

MANUFACTURER = '0x' + '1' * 40
SUPPLIER = '0x' + '2' * 40
RETAILER = '0x' + '3' * 40
CONTRACT = '0x' + 'c' * 40


class FakeLedger:
    """In-process stand-in for LedgerClient with the same call surface"""

    contract_address = CONTRACT

    def __init__(self):
        self.balances = defaultdict(int)
        self.batches = {}
        self.by_batch = {}
        self.receipts = {}
        self.next_token_id = 1
        self.calls = []
        self.failures = {}
        self.transactions = {}
        self._tx_count = 0

    def fail(self, operation, error, when=None, after_submit=False):
        """
        Make `operation` raise `error`, optionally only for calls matching `when(**kwargs)`.
        With after_submit the transaction still lands and the error carries its hash.
        """
        self.failures[operation] = (when, error, after_submit)

    def _check(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        rule = self.failures.get(operation)
        if rule and (rule[0] is None or rule[0](**kwargs)):
            if rule[2]:
                return rule[1]
            raise rule[1]
        return None

    def _tx(self):
        self._tx_count += 1
        tx_hash = '0x' + format(self._tx_count, '064x')
        self.transactions[tx_hash] = 'confirmed'
        return {'tx_hash': tx_hash, 'block_number': 100 + self._tx_count, 'gas_used': 50000}

    def mint_batch(self, sender, batch_number, template_id, quantity, production_date,
                   expiry_date, carbon_footprint, plant_id, metadata_uri, data=b''):
        self._check('mint_batch', sender=sender, batch_number=batch_number, quantity=quantity,
                    carbon_footprint=carbon_footprint, metadata_uri=metadata_uri)
        key = (batch_number, sender.lower())
        if key in self.by_batch:
            raise LedgerRejected("SupplyChainTokens: Batch already exists for this manufacturer")
        token_id = self.next_token_id
        self.next_token_id += 1
        self.by_batch[key] = token_id
        self.balances[(sender.lower(), token_id)] += quantity
        self.batches[token_id] = {
            'batch_number': batch_number,
            'manufacturer': sender.lower(),
            'template_id': template_id,
            'quantity': quantity,
            'production_date': production_date,
            'expiry_date': expiry_date,
            'carbon_footprint': carbon_footprint,
            'plant_id': plant_id,
            'metadata_uri': metadata_uri,
            'is_active': True,
        }
        result = self._tx()
        result['token_id'] = token_id
        self.receipts[result['tx_hash']] = dict(result, batch_number=batch_number, manufacturer=sender.lower())
        return result

    def burn_component_tokens(self, sender, token_id, quantity, reason=''):
        late = self._check('burn_component_tokens', sender=sender, token_id=token_id, quantity=quantity,
                           reason=reason)
        if self.balances[(sender.lower(), token_id)] < quantity:
            raise LedgerRejected("execution reverted: Insufficient balance")
        self.balances[(sender.lower(), token_id)] -= quantity
        result = self._tx()
        if late is not None:
            late.tx_hash = result['tx_hash']
            raise late
        return result

    def transfer_to_partner(self, sender, to, token_id, quantity, reason='', metadata=''):
        self._check('transfer_to_partner', sender=sender, to=to, token_id=token_id, quantity=quantity)
        if self.balances[(sender.lower(), token_id)] < quantity:
            raise LedgerRejected("execution reverted: Insufficient balance")
        self.balances[(sender.lower(), token_id)] -= quantity
        self.balances[(to.lower(), token_id)] += quantity
        return self._tx()

    def balance_of(self, address, token_id):
        return self.balances[(address.lower(), token_id)]

    def get_batch_info(self, token_id):
        return dict(self.batches[token_id])

    def get_current_token_counter(self):
        return self.next_token_id

    def get_all_minted_tokens(self):
        return list(range(1, self.next_token_id))

    def get_user_token_balances(self, address):
        return [
            {'token_id': t, 'balance': self.balance_of(address, t), 'batch_info': self.get_batch_info(t)}
            for t in self.get_all_minted_tokens() if self.balance_of(address, t) > 0
        ]

    def get_token_id_by_batch(self, batch_number, manufacturer):
        return self.by_batch.get((batch_number, manufacturer.lower()))

    def get_transaction_status(self, tx_hash):
        return self.transactions.get(tx_hash, 'pending')

    def get_mint_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise LedgerRejected(f"Transaction {tx_hash} not found")
        return dict(self.receipts[tx_hash])

    def count(self, operation):
        return sum(1 for name, _ in self.calls if name == operation)


class ChainBuilder:
    """Shortcuts for registering companies, plants, templates and minted batches"""

    def __init__(self, repository, ledger):
        self.repository = repository
        self.ledger = ledger
        self._batch_numbers = defaultdict(int)

    def company(self, address, name='Acme Components', company_type='Manufacturer'):
        return self.repository.register_company({
            'wallet_address': address,
            'company_name': name,
            'company_address': '1 Industrial Way',
            'company_type': company_type,
        })

    def plant(self, company_address, code='P1', name='Main Plant', latitude=45.46, longitude=9.19):
        return self.repository.create_plant({
            'name': name,
            'code': code,
            'company_address': company_address,
            'address': '1 Factory Road',
            'city': 'Milan',
            'country': 'Italy',
            'latitude': latitude,
            'longitude': longitude,
        })

    def template(self, manufacturer, name, carbon_per_unit=1.0, is_raw_material=True, category='Metals'):
        return self.repository.create_template({
            'name': name,
            'description': f'{name} description',
            'category': category,
            'is_raw_material': is_raw_material,
            'manufacturer_address': manufacturer,
            'specifications': {
                'weight': 1.5,
                'materials': 'steel, copper',
                'carbon_footprint_per_unit': carbon_per_unit,
            },
        })

    def batch(self, manufacturer, template_id, plant_id, quantity, components=None, batch_number=None,
              carbon_footprint=None):
        if batch_number is None:
            self._batch_numbers[manufacturer] += 1
            batch_number = self._batch_numbers[manufacturer]
        data = {
            'batch_number': batch_number,
            'template_id': template_id,
            'quantity': quantity,
            'production_date': '2024-03-01T00:00:00',
            'manufacturer_address': manufacturer,
            'plant_id': plant_id,
            'components': components or [],
        }
        if carbon_footprint is not None:
            data['carbon_footprint'] = carbon_footprint
        return self.repository.create_batch(data, require_components=False)

    def minted_batch(self, manufacturer, template_id, plant_id, quantity, **kwargs):
        """Create a batch and mint it directly, without consuming components"""
        batch_id = self.batch(manufacturer, template_id, plant_id, quantity, **kwargs)
        batch = self.repository.get_batch(batch_id)
        mint = self.ledger.mint_batch(manufacturer, batch.batch_number, str(template_id), quantity,
                                      int(datetime(2024, 3, 1).timestamp()), 0, batch.carbon_footprint,
                                      str(plant_id), '')
        self.repository.record_mint_result(batch_id, mint['token_id'], mint['tx_hash'], mint['block_number'])
        return self.repository.get_batch(batch_id)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def app(tmp_path, ledger):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'RESOLVER_MAX_WORKERS': 4,
        'RESOLVE_TIMEOUT': 10,
        'METADATA_BASE_URL': 'http://localhost/api/metadata',
    }, ledger_client=ledger)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def repository(app):
    return BatchRepository()


@pytest.fixture
def chain(repository, ledger):
    return ChainBuilder(repository, ledger)
