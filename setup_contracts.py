#!/usr/bin/env python3
"""
Setup script to register the SupplyChainTokens contract address in the database
"""

import argparse
import sys

from web3 import Web3

import config
from app import configure_logging, create_app
from services.ledger_client import ARTIFACTS_DIR, CONTRACT_NAME, LedgerClient
from utils.contract_utils import store_contract


def setup_contracts(contract_address, deployed_by=None, block_number=None, transaction_hash=None, verify=True):
    """Check the ABI artifact, optionally probe the contract, then store its address"""
    print("🔧 Setting up contracts for the supply-chain service...")

    abi_file = ARTIFACTS_DIR / f'{CONTRACT_NAME}.json'
    if not abi_file.exists():
        print(f"❌ {abi_file} not found")
        return False
    print(f"✅ Found {abi_file.name}")

    if not Web3.is_address(contract_address):
        print(f"❌ Invalid contract address: {contract_address}")
        return False

    if verify:
        ledger = LedgerClient.from_rpc(config.RPC_URL, contract_address, chain_id=config.CHAIN_ID)
        counter = ledger.get_current_token_counter()
        print(f"✅ Contract responds; next token id is {counter}")

    app = create_app(connect_ledger=False)
    with app.app_context():
        store_contract(
            config.CONTRACT_TYPE,
            contract_address,
            CONTRACT_NAME,
            deployed_by=deployed_by,
            chain_id=config.CHAIN_ID,
            block_number=block_number,
            transaction_hash=transaction_hash,
        )

    print("🎉 Contract setup completed!")
    return True


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Register the SupplyChainTokens contract')
    parser.add_argument('address', help='Deployed contract address')
    parser.add_argument('--deployer', help='Deployer wallet address')
    parser.add_argument('--block', type=int, help='Deployment block number')
    parser.add_argument('--tx', help='Deployment transaction hash')
    parser.add_argument('--no-verify', action='store_true', help='Skip the on-chain probe')
    args = parser.parse_args()

    configure_logging()
    ok = setup_contracts(args.address, deployed_by=args.deployer, block_number=args.block,
                         transaction_hash=args.tx, verify=not args.no_verify)
    sys.exit(0 if ok else 1)
