import json
import logging

from models import db
from models.contract import Contract

logger = logging.getLogger(__name__)


def get_contract_address(contract_type):
    """Get the active contract address of a type from the database"""
    contract = (Contract.query
                .filter_by(contract_type=contract_type, is_active=True)
                .order_by(Contract.deployed_at.desc())
                .first())
    return contract.contract_address if contract else None


def store_contract(contract_type, contract_address, contract_name, deployed_by=None, chain_id=None,
                   block_number=None, transaction_hash=None, metadata=None):
    """Register a contract, deactivating earlier ones of the same type"""
    address = contract_address.lower()
    for previous in Contract.query.filter_by(contract_type=contract_type, is_active=True).all():
        previous.is_active = previous.contract_address == address

    existing = Contract.query.filter_by(contract_address=address).first()
    if existing:
        existing.is_active = True
        db.session.commit()
        return existing

    contract = Contract(
        contract_type=contract_type,
        contract_address=address,
        contract_name=contract_name,
        chain_id=chain_id,
        deployed_by=deployed_by.lower() if deployed_by else None,
        block_number=block_number,
        transaction_hash=transaction_hash,
        contract_metadata=json.dumps(metadata) if metadata else None
    )
    db.session.add(contract)
    db.session.commit()
    logger.info(f"Registered {contract_type} at {address}")
    return contract
