"""
Transaction Indexer Service
Journal of ledger transfers, keyed by transaction hash
"""

import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from models import db
from models.transfer import TokenTransfer
from services.exceptions import NotFound, ValidationError

logger = logging.getLogger(__name__)

TRANSFER_STATUSES = ('pending', 'confirmed', 'failed')


class TransactionIndexer:
    """Service for indexing ledger transfers in the database"""

    def record_transfer(self, from_address, to_address, token_id, quantity, tx_hash,
                        reason=None, block_number=None, gas_used=None, status='pending'):
        """Index a transfer. Recording the same tx hash twice leaves a single entry."""
        if not all([from_address, to_address, token_id, quantity, tx_hash]):
            raise ValidationError("Missing required fields: from, to, token_id, quantity, tx_hash")
        if status not in TRANSFER_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(TRANSFER_STATUSES)}")

        existing = TokenTransfer.query.filter_by(transaction_hash=tx_hash).first()
        if existing:
            logger.info(f"Transfer {tx_hash} already indexed")
            return existing

        transfer = TokenTransfer(
            from_address=from_address.lower(),
            to_address=to_address.lower(),
            token_id=int(token_id),
            quantity=int(quantity),
            reason=reason,
            transaction_hash=tx_hash,
            block_number=block_number,
            gas_used=gas_used,
            status=status,
        )
        db.session.add(transfer)
        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent writer indexed the same hash first
            db.session.rollback()
            return TokenTransfer.query.filter_by(transaction_hash=tx_hash).one()

        logger.info(f"Indexed transfer: token {token_id} x{quantity} {from_address} -> {to_address} ({tx_hash})")
        return transfer

    def update_status(self, tx_hash, status, block_number=None, gas_used=None):
        if status not in TRANSFER_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(TRANSFER_STATUSES)}")
        transfer = TokenTransfer.query.filter_by(transaction_hash=tx_hash).first()
        if not transfer:
            raise NotFound(f"Transfer {tx_hash} not found")
        transfer.status = status
        if block_number is not None:
            transfer.block_number = block_number
        if gas_used is not None:
            transfer.gas_used = gas_used
        db.session.commit()
        return transfer

    def list_transfers(self, address=None, from_address=None, to_address=None, token_id=None):
        """Transfers newest first; `address` matches either side"""
        query = TokenTransfer.query
        if address:
            address = address.lower()
            query = query.filter(or_(TokenTransfer.from_address == address, TokenTransfer.to_address == address))
        if from_address:
            query = query.filter_by(from_address=from_address.lower())
        if to_address:
            query = query.filter_by(to_address=to_address.lower())
        if token_id is not None:
            query = query.filter_by(token_id=token_id)
        return query.order_by(TokenTransfer.created_at.desc(), TokenTransfer.id.desc()).all()
