from flask import request
from web3 import Web3

from services.exceptions import ValidationError

WALLET_HEADER = 'X-Wallet-Address'
ZERO_ADDRESS = '0x' + '0' * 40


def is_valid_address(address):
    """Well-formed and not the zero address"""
    return isinstance(address, str) and Web3.is_address(address) and address.lower() != ZERO_ADDRESS


def normalize_address(address, field='address'):
    """Validate an address and return it lower-cased"""
    if not address:
        raise ValidationError(f"{field} is required")
    if not is_valid_address(address):
        raise ValidationError(f"Invalid Ethereum address format for {field}")
    return address.lower()


def get_caller_address(required=True):
    """Wallet address of the caller, from the wallet header or the JSON body"""
    address = request.headers.get(WALLET_HEADER)
    if not address:
        data = request.get_json(silent=True) or {}
        address = data.get('address') or data.get('wallet_address')
    if not address:
        if required:
            raise ValidationError("Wallet address is required")
        return None
    return normalize_address(address, 'wallet address')
