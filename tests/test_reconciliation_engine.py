import threading

import pytest
from sqlalchemy.exc import OperationalError

from models import db
from models.transfer import TokenTransfer
from services.composition_resolver import CompositionResolver
from services.exceptions import (
    AlreadyMinted, InsufficientBalance, LedgerError, LedgerErrorKind, LedgerRejected, MintFailed,
    OperationCancelled, ValidationError,
)
from services.partner_directory import PartnerDirectory
from services.reconciliation_engine import ReconciliationEngine

from conftest import MANUFACTURER, RETAILER, SUPPLIER


@pytest.fixture
def engine(app, ledger):
    return ReconciliationEngine(ledger, metadata_base_url='http://localhost/api/metadata')


@pytest.fixture
def assembly(chain):
    """Two minted raw batches held by the manufacturer, and an unminted assembly consuming both"""
    chain.company(MANUFACTURER, name='Motor Works')
    plant_id = chain.plant(MANUFACTURER)
    wire_template = chain.template(MANUFACTURER, 'Copper Wire', carbon_per_unit=0.01)
    magnet_template = chain.template(MANUFACTURER, 'Magnet', carbon_per_unit=0.05)
    motor_template = chain.template(MANUFACTURER, 'Motor', carbon_per_unit=2, is_raw_material=False)
    wire = chain.minted_batch(MANUFACTURER, wire_template, plant_id, 100)
    magnet = chain.minted_batch(MANUFACTURER, magnet_template, plant_id, 20)
    motor_id = chain.batch(MANUFACTURER, motor_template, plant_id, 10, components=[
        {'token_id': wire.token_id, 'quantity': 6},
        {'token_id': magnet.token_id, 'quantity': 2},
    ])
    return wire, magnet, motor_id


class TestMint:
    def test_end_to_end(self, chain, engine, ledger, repository):
        chain.company(MANUFACTURER)
        plant_id = chain.plant(MANUFACTURER)
        raw_template = chain.template(MANUFACTURER, 'Copper Wire', carbon_per_unit=0.01)
        product_template = chain.template(MANUFACTURER, 'Motor', carbon_per_unit=2, is_raw_material=False)
        raw = chain.minted_batch(MANUFACTURER, raw_template, plant_id, 100)
        assert raw.carbon_footprint == 1000

        motor_id = chain.batch(MANUFACTURER, product_template, plant_id, 10,
                               components=[{'token_id': raw.token_id, 'quantity': 6}])
        result = engine.mint_batch_with_components(motor_id, MANUFACTURER)

        motor = repository.get_batch(motor_id)
        assert motor.token_id == result['token_id']
        assert motor.transaction_hash == result['tx_hash']
        assert motor.carbon_footprint == 20060
        assert motor.components[0].consumed is True
        assert motor.components[0].burn_transaction_hash == result['burns'][0]['tx_hash']
        assert ledger.balance_of(MANUFACTURER, raw.token_id) == 94
        assert ledger.batches[motor.token_id]['carbon_footprint'] == 20060
        assert ledger.batches[motor.token_id]['metadata_uri'] == \
            f'http://localhost/api/metadata/batch/{MANUFACTURER}/{motor.batch_number}'

        tree = CompositionResolver().resolve(motor.token_id)
        assert tree.root.children[0].carbon_share == 60

    def test_burns_precede_mint(self, engine, ledger, assembly):
        _, _, motor_id = assembly
        engine.mint_batch_with_components(motor_id, MANUFACTURER)
        operations = [name for name, _ in ledger.calls if name in ('burn_component_tokens', 'mint_batch')]
        assert operations[-3:] == ['burn_component_tokens', 'burn_component_tokens', 'mint_batch']

    def test_burn_reason(self, engine, ledger, repository, assembly):
        _, _, motor_id = assembly
        engine.mint_batch_with_components(motor_id, MANUFACTURER)
        number = repository.get_batch(motor_id).batch_number
        reasons = {kw['reason'] for name, kw in ledger.calls if name == 'burn_component_tokens'}
        assert reasons == {f'Component consumption for batch {number}'}

    def test_already_minted(self, engine, assembly):
        _, _, motor_id = assembly
        engine.mint_batch_with_components(motor_id, MANUFACTURER)
        with pytest.raises(AlreadyMinted):
            engine.mint_batch_with_components(motor_id, MANUFACTURER)

    def test_only_manufacturer_can_mint(self, engine, assembly):
        _, _, motor_id = assembly
        with pytest.raises(ValidationError):
            engine.mint_batch_with_components(motor_id, SUPPLIER)

    def test_burn_failure_persists_completed_burns(self, engine, ledger, repository, assembly):
        wire, magnet, motor_id = assembly
        ledger.fail('burn_component_tokens', LedgerRejected('execution reverted: Insufficient balance'),
                    when=lambda **kw: kw['token_id'] == magnet.token_id)

        with pytest.raises(MintFailed) as exc:
            engine.mint_batch_with_components(motor_id, MANUFACTURER)
        assert exc.value.stage == 'burn'
        assert exc.value.component_token_id == magnet.token_id
        assert [b['token_id'] for b in exc.value.burns] == [wire.token_id]
        assert isinstance(exc.value.cause, LedgerError)

        db.session.expire_all()
        motor = repository.get_batch(motor_id)
        assert motor.token_id is None
        assert [c.consumed for c in motor.components] == [True, False]

        # Retry burns only what is left
        ledger.failures.clear()
        burns_before = ledger.count('burn_component_tokens')
        engine.mint_batch_with_components(motor_id, MANUFACTURER)
        assert ledger.count('burn_component_tokens') == burns_before + 1
        assert ledger.balance_of(MANUFACTURER, wire.token_id) == 94
        assert ledger.balance_of(MANUFACTURER, magnet.token_id) == 18

    def _submitted_burn_times_out(self, engine, ledger, wire, motor_id):
        ledger.fail('burn_component_tokens', LedgerError(LedgerErrorKind.NETWORK, 'receipt wait timed out'),
                    when=lambda **kw: kw['token_id'] == wire.token_id, after_submit=True)
        with pytest.raises(MintFailed) as exc:
            engine.mint_batch_with_components(motor_id, MANUFACTURER)
        ledger.failures.clear()
        return exc.value

    def test_submitted_burn_is_recorded_as_in_flight(self, engine, ledger, repository, assembly):
        wire, _, motor_id = assembly
        error = self._submitted_burn_times_out(engine, ledger, wire, motor_id)

        tx_hash = error.to_dict()['cause_tx_hash']
        assert tx_hash is not None
        assert error.burns == []

        db.session.expire_all()
        component = repository.get_batch(motor_id).components[0]
        assert component.consumed is False
        assert component.burn_transaction_hash == tx_hash

    def test_retry_settles_confirmed_burn_without_burning_again(self, engine, ledger, repository, assembly):
        wire, magnet, motor_id = assembly
        tx_hash = self._submitted_burn_times_out(engine, ledger, wire, motor_id).cause.tx_hash
        assert ledger.balance_of(MANUFACTURER, wire.token_id) == 94

        burns_before = ledger.count('burn_component_tokens')
        result = engine.mint_batch_with_components(motor_id, MANUFACTURER)

        assert ledger.count('burn_component_tokens') == burns_before + 1
        assert ledger.balance_of(MANUFACTURER, wire.token_id) == 94
        assert ledger.balance_of(MANUFACTURER, magnet.token_id) == 18
        assert result['burns'][0]['tx_hash'] == tx_hash
        motor = repository.get_batch(motor_id)
        assert all(c.consumed for c in motor.components)
        assert motor.components[0].burn_transaction_hash == tx_hash

    def test_retry_stops_while_burn_is_pending(self, engine, ledger, repository, assembly):
        wire, _, motor_id = assembly
        tx_hash = self._submitted_burn_times_out(engine, ledger, wire, motor_id).cause.tx_hash
        ledger.transactions[tx_hash] = 'pending'

        burns_before = ledger.count('burn_component_tokens')
        with pytest.raises(MintFailed) as exc:
            engine.mint_batch_with_components(motor_id, MANUFACTURER)
        assert exc.value.stage == 'burn'
        assert exc.value.to_dict()['cause_tx_hash'] == tx_hash
        assert ledger.count('burn_component_tokens') == burns_before
        assert ledger.count('mint_batch') == 2

    def test_retry_burns_again_after_revert(self, engine, ledger, repository, assembly):
        wire, _, motor_id = assembly
        tx_hash = self._submitted_burn_times_out(engine, ledger, wire, motor_id).cause.tx_hash
        # Reverted on-chain: nothing was debited
        ledger.transactions[tx_hash] = 'failed'
        ledger.balances[(MANUFACTURER, wire.token_id)] += 6

        result = engine.mint_batch_with_components(motor_id, MANUFACTURER)
        assert result['burns'][0]['tx_hash'] != tx_hash
        assert ledger.balance_of(MANUFACTURER, wire.token_id) == 94

    def test_mint_failure_keeps_burns(self, engine, ledger, repository, assembly):
        _, _, motor_id = assembly
        ledger.fail('mint_batch', LedgerError(LedgerErrorKind.NETWORK, 'node unreachable'),
                    when=lambda **kw: kw['quantity'] == 10)

        with pytest.raises(MintFailed) as exc:
            engine.mint_batch_with_components(motor_id, MANUFACTURER)
        assert exc.value.stage == 'mint'
        assert len(exc.value.burns) == 2

        db.session.expire_all()
        motor = repository.get_batch(motor_id)
        assert motor.token_id is None
        assert all(c.consumed for c in motor.components)

    def test_cancelled_before_burns(self, engine, ledger, assembly):
        _, _, motor_id = assembly
        cancel = threading.Event()
        cancel.set()
        burns_before = ledger.count('burn_component_tokens')

        with pytest.raises(OperationCancelled):
            engine.mint_batch_with_components(motor_id, MANUFACTURER, cancel_event=cancel)
        assert ledger.count('burn_component_tokens') == burns_before

    def test_ledger_duplicate_is_detected_before_burning(self, engine, ledger, repository, assembly):
        _, _, motor_id = assembly
        motor = repository.get_batch(motor_id)
        ledger.mint_batch(MANUFACTURER, motor.batch_number, str(motor.template_id), 10, 1, 0, 20000,
                          str(motor.plant_id), '')
        burns_before = ledger.count('burn_component_tokens')

        with pytest.raises(AlreadyMinted):
            engine.mint_batch_with_components(motor_id, MANUFACTURER)
        assert ledger.count('burn_component_tokens') == burns_before


class TestMintRecovery:
    def test_find_and_recover_unrecorded_mint(self, engine, ledger, repository, assembly):
        _, _, motor_id = assembly
        motor = repository.get_batch(motor_id)
        mint = ledger.mint_batch(MANUFACTURER, motor.batch_number, str(motor.template_id), 10, 1, 0, 20000,
                                 str(motor.plant_id), '')

        unrecorded = engine.find_unrecorded_mints(MANUFACTURER)
        assert unrecorded == [{'batch_id': motor_id, 'batch_number': motor.batch_number,
                               'token_id': mint['token_id']}]

        engine.recover_mint(motor_id, mint['tx_hash'])
        motor = repository.get_batch(motor_id)
        assert motor.token_id == mint['token_id']
        assert all(c.consumed for c in motor.components)
        assert engine.find_unrecorded_mints(MANUFACTURER) == []


class TestTransfer:
    @pytest.fixture
    def stock(self, chain):
        chain.company(MANUFACTURER, name='Motor Works')
        chain.company(RETAILER, name='Shop', company_type='Retailer')
        plant_id = chain.plant(MANUFACTURER)
        template_id = chain.template(MANUFACTURER, 'Copper Wire')
        return chain.minted_batch(MANUFACTURER, template_id, plant_id, 50)

    def test_transfer_to_partner_is_journaled(self, engine, ledger, stock):
        PartnerDirectory().add_partner(MANUFACTURER, RETAILER, 'customer')
        result = engine.transfer_tokens(MANUFACTURER, RETAILER, stock.token_id, 20, reason='order 17')

        assert result['journal_recorded'] is True
        assert ledger.balance_of(RETAILER, stock.token_id) == 20
        transfer = TokenTransfer.query.filter_by(transaction_hash=result['tx_hash']).one()
        assert transfer.status == 'confirmed'
        assert transfer.reason == 'order 17'

    def test_recipient_must_be_active_partner(self, engine, ledger, stock):
        with pytest.raises(ValidationError):
            engine.transfer_tokens(MANUFACTURER, RETAILER, stock.token_id, 1)
        assert ledger.count('transfer_to_partner') == 0

    def test_inactive_partner_rejected(self, engine, stock):
        partner = PartnerDirectory().add_partner(MANUFACTURER, RETAILER, 'customer')
        PartnerDirectory().update_partner(partner.id, status='inactive')
        with pytest.raises(ValidationError):
            engine.transfer_tokens(MANUFACTURER, RETAILER, stock.token_id, 1)

    def test_supplier_direction_allowed(self, engine, stock):
        PartnerDirectory().add_partner(MANUFACTURER, RETAILER, 'supplier')
        assert engine.transfer_tokens(MANUFACTURER, RETAILER, stock.token_id, 1)['tx_hash']

    def test_insufficient_balance(self, engine, ledger, stock):
        PartnerDirectory().add_partner(MANUFACTURER, RETAILER, 'customer')
        with pytest.raises(InsufficientBalance):
            engine.transfer_tokens(MANUFACTURER, RETAILER, stock.token_id, 51)
        assert ledger.count('transfer_to_partner') == 0

    def test_invalid_addresses(self, engine, stock):
        with pytest.raises(ValidationError):
            engine.transfer_tokens(MANUFACTURER, 'not-an-address', stock.token_id, 1)
        with pytest.raises(ValidationError):
            engine.transfer_tokens(MANUFACTURER, '0x' + '0' * 40, stock.token_id, 1)
        with pytest.raises(ValidationError):
            engine.transfer_tokens(MANUFACTURER, MANUFACTURER, stock.token_id, 1)

    def test_journal_failure_does_not_fail_transfer(self, engine, ledger, stock, monkeypatch):
        PartnerDirectory().add_partner(MANUFACTURER, RETAILER, 'customer')

        def broken(*args, **kwargs):
            raise OperationalError('INSERT', {}, Exception('database is locked'))

        monkeypatch.setattr(engine.indexer, 'record_transfer', broken)
        result = engine.transfer_tokens(MANUFACTURER, RETAILER, stock.token_id, 5)

        assert result['journal_recorded'] is False
        assert ledger.balance_of(RETAILER, stock.token_id) == 5


class TestInventory:
    def test_inventory_lists_positive_balances(self, chain, engine):
        chain.company(MANUFACTURER)
        plant_id = chain.plant(MANUFACTURER)
        template_id = chain.template(MANUFACTURER, 'Copper Wire')
        batch = chain.minted_batch(MANUFACTURER, template_id, plant_id, 50)

        inventory = engine.get_inventory(MANUFACTURER)
        assert len(inventory) == 1
        assert inventory[0]['token_id'] == batch.token_id
        assert inventory[0]['balance'] == 50
        assert inventory[0]['batch_id'] == batch.id
        assert engine.get_inventory(RETAILER) == []
