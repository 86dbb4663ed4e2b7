"""
Reconciliation Engine
Keeps ledger state and the batch repository consistent across mint, burn and transfer.
"""

import logging
from datetime import timezone

from sqlalchemy.exc import SQLAlchemyError

from config import METADATA_BASE_URL
from models import db
from services.batch_repository import BatchRepository, positive_int
from services.exceptions import (
    AlreadyMinted, Conflict, InsufficientBalance, LedgerError, LedgerErrorKind, MintFailed, NotFound,
    OperationCancelled, SupplyChainException, ValidationError,
)
from services.partner_directory import PartnerDirectory
from services.transaction_indexer import TransactionIndexer
from utils.session_utils import normalize_address

logger = logging.getLogger(__name__)


def _unix_seconds(value):
    if value is None:
        return 0
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class ReconciliationEngine:
    """Orchestrates ledger writes and the matching repository updates"""

    def __init__(self, ledger, repository=None, partners=None, indexer=None,
                 metadata_base_url=METADATA_BASE_URL):
        self.ledger = ledger
        self.repository = repository or BatchRepository()
        self.partners = partners or PartnerDirectory()
        self.indexer = indexer or TransactionIndexer()
        self.metadata_base_url = metadata_base_url.rstrip('/')

    def metadata_uri(self, manufacturer_address, batch_number):
        return f"{self.metadata_base_url}/batch/{manufacturer_address}/{batch_number}"

    def mint_batch_with_components(self, batch_id, sender, cancel_event=None):
        """
        Burn every unconsumed component, mint the batch token and record the result.

        Burns run one at a time and all finish before the mint is submitted. Burns that
        completed are persisted even when a later step fails or the caller cancels.
        """
        sender = normalize_address(sender, 'sender')
        batch = self.repository.get_batch(batch_id)
        if batch.is_minted:
            raise AlreadyMinted(f"Batch {batch.id} is already minted as token {batch.token_id}")
        if batch.manufacturer_address != sender:
            raise ValidationError("Only the batch manufacturer can mint it")

        for component in batch.components:
            try:
                self.repository.get_batch_by_token(component.token_id)
            except NotFound:
                raise ValidationError(f"Component token {component.token_id} does not reference a minted batch")

        existing = self.ledger.get_token_id_by_batch(batch.batch_number, sender)
        if existing:
            raise AlreadyMinted(f"Batch #{batch.batch_number} already exists on the ledger as token {existing}; "
                                f"recover it from its mint transaction")

        # Plain values; repository commits expire the ORM instance
        plan = [(c.position, c.token_id, c.quantity, c.burn_transaction_hash)
                for c in batch.components if not c.consumed]
        mint_args = {
            'batch_number': batch.batch_number,
            'template_id': str(batch.template_id),
            'quantity': batch.quantity,
            'production_date': _unix_seconds(batch.production_date),
            'expiry_date': _unix_seconds(batch.expiry_date),
            'carbon_footprint': batch.carbon_footprint,
            'plant_id': str(batch.plant_id),
            'metadata_uri': self.metadata_uri(batch.manufacturer_address, batch.batch_number),
        }
        reason = f"Component consumption for batch {batch.batch_number}"

        burns = []
        for position, token_id, quantity, previous_hash in plan:
            self._check_cancelled(cancel_event, batch_id, burns)
            burn = {'position': position, 'token_id': token_id, 'quantity': quantity}

            if previous_hash and self._settle_previous_burn(batch_id, burn, previous_hash, burns):
                continue

            try:
                result = self.ledger.burn_component_tokens(sender, token_id, quantity, reason)
            except LedgerError as e:
                logger.error(f"❌ Burn of component token {token_id} for batch {batch_id} failed: {e}")
                in_flight = []
                if e.tx_hash:
                    # Submitted; the outcome is settled from its receipt on retry
                    in_flight.append(dict(burn, tx_hash=e.tx_hash, pending=True))
                self._persist_burns(batch_id, burns + in_flight)
                raise MintFailed('burn', e, component_token_id=token_id, burns=burns) from e
            burns.append(dict(burn, tx_hash=result['tx_hash']))
            logger.info(f"🔥 Burned {quantity} of token {token_id} for batch {batch_id}")

        self._check_cancelled(cancel_event, batch_id, burns)
        try:
            mint = self.ledger.mint_batch(sender, **mint_args)
        except LedgerError as e:
            logger.error(f"❌ Mint of batch {batch_id} failed after {len(burns)} burn(s): {e}")
            self._persist_burns(batch_id, burns)
            raise MintFailed('mint', e, burns=burns) from e

        try:
            self.repository.record_mint_result(
                batch_id,
                mint['token_id'],
                mint['tx_hash'],
                block_number=mint.get('block_number'),
                consumed_components=burns,
                contract_address=self.ledger.contract_address,
            )
        except (SQLAlchemyError, SupplyChainException) as e:
            db.session.rollback()
            logger.error(f"❌ Batch {batch_id} minted as token {mint['token_id']} ({mint['tx_hash']}) "
                         f"but recording failed: {e}")
            raise MintFailed('record', e, burns=burns, token_id=mint['token_id'], tx_hash=mint['tx_hash']) from e

        logger.info(f"✅ Batch {batch_id} minted as token {mint['token_id']}")
        return {
            'token_id': mint['token_id'],
            'tx_hash': mint['tx_hash'],
            'block_number': mint.get('block_number'),
            'burns': burns,
        }

    def recover_mint(self, batch_id, tx_hash):
        """Record a mint whose transaction landed but whose result was never stored"""
        batch = self.repository.get_batch(batch_id)
        minted = self.ledger.get_mint_receipt(tx_hash)
        if (minted['batch_number'] != batch.batch_number
                or minted['manufacturer'].lower() != batch.manufacturer_address):
            raise Conflict(f"Transaction {tx_hash} does not mint batch #{batch.batch_number}")

        # Burns always complete before the mint is submitted
        consumed = [{'position': c.position, 'token_id': c.token_id} for c in batch.components if not c.consumed]
        self.repository.record_mint_result(
            batch_id,
            minted['token_id'],
            minted['tx_hash'],
            block_number=minted.get('block_number'),
            consumed_components=consumed,
            contract_address=self.ledger.contract_address,
        )
        logger.info(f"Recovered mint of batch {batch_id} as token {minted['token_id']} from {tx_hash}")
        return {'token_id': minted['token_id'], 'tx_hash': minted['tx_hash']}

    def find_unrecorded_mints(self, manufacturer_address):
        """Local unminted batches that already exist on the ledger"""
        manufacturer = normalize_address(manufacturer_address, 'manufacturer_address')
        unrecorded = []
        for batch in self.repository.list_batches(manufacturer_address=manufacturer, minted=False):
            token_id = self.ledger.get_token_id_by_batch(batch.batch_number, manufacturer)
            if token_id:
                unrecorded.append({'batch_id': batch.id, 'batch_number': batch.batch_number, 'token_id': token_id})
        if unrecorded:
            logger.warning(f"{len(unrecorded)} batch(es) of {manufacturer} are minted but not recorded")
        return unrecorded

    def transfer_tokens(self, sender, to, token_id, quantity, reason=''):
        sender = normalize_address(sender, 'sender')
        to = normalize_address(to, 'recipient')
        if sender == to:
            raise ValidationError("Cannot transfer to yourself")
        token_id = positive_int(token_id, 'token_id')
        quantity = positive_int(quantity, 'quantity')

        if not self.partners.get_active_partner(sender, to):
            raise ValidationError(f"Recipient {to} is not an active partner")

        balance = self.ledger.balance_of(sender, token_id)
        if balance < quantity:
            raise InsufficientBalance(f"Insufficient balance. You have {balance:,}, trying to transfer {quantity:,}.")

        result = self.ledger.transfer_to_partner(sender, to, token_id, quantity, reason or '')

        journal_recorded = True
        try:
            self.indexer.record_transfer(
                sender, to, token_id, quantity, result['tx_hash'],
                reason=reason,
                block_number=result.get('block_number'),
                gas_used=result.get('gas_used'),
                status='confirmed',
            )
        except (SQLAlchemyError, SupplyChainException) as e:
            # Ledger transfer stands; the journal can be rebuilt from the tx hash
            db.session.rollback()
            logger.error(f"⚠️ Transfer {result['tx_hash']} succeeded on the ledger but was not journaled: {e}")
            journal_recorded = False

        return {
            'tx_hash': result['tx_hash'],
            'block_number': result.get('block_number'),
            'gas_used': result.get('gas_used'),
            'journal_recorded': journal_recorded,
        }

    def get_inventory(self, address):
        address = normalize_address(address, 'address')
        inventory = []
        for entry in self.ledger.get_user_token_balances(address):
            try:
                batch = self.repository.get_batch_by_token(entry['token_id'])
                entry['batch_id'] = batch.id
            except NotFound:
                entry['batch_id'] = None
            inventory.append(entry)
        return inventory

    def _settle_previous_burn(self, batch_id, burn, tx_hash, burns):
        """
        Resolve a burn submitted by an earlier attempt. True when it landed, False when it
        reverted and must be sent again; raises while it is still unconfirmed.
        """
        status = self.ledger.get_transaction_status(tx_hash)
        if status == 'confirmed':
            burns.append(dict(burn, tx_hash=tx_hash))
            logger.info(f"🔥 Earlier burn {tx_hash} of token {burn['token_id']} for batch {batch_id} confirmed")
            return True
        if status == 'failed':
            logger.warning(f"Earlier burn {tx_hash} of token {burn['token_id']} reverted; burning again")
            return False
        self._persist_burns(batch_id, burns)
        error = LedgerError(LedgerErrorKind.NETWORK, f"Burn {tx_hash} is still pending", tx_hash=tx_hash)
        raise MintFailed('burn', error, component_token_id=burn['token_id'], burns=burns)

    def _persist_burns(self, batch_id, burns):
        if not burns:
            return
        try:
            self.repository.record_component_burns(batch_id, burns)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"❌ Could not persist {len(burns)} executed burn(s) for batch {batch_id}: {burns} ({e})")

    def _check_cancelled(self, cancel_event, batch_id, burns):
        if cancel_event is not None and cancel_event.is_set():
            self._persist_burns(batch_id, burns)
            raise OperationCancelled(f"Mint of batch {batch_id} cancelled after {len(burns)} burn(s)")
