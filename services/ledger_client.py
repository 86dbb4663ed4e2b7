"""
Ledger Client
Typed access to the SupplyChainTokens ERC-1155 contract: signing, fee policy, receipts and event parsing
"""

import json
import logging
import threading
from pathlib import Path

import requests
from eth_abi import decode
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from config import NETWORK_FEE_FLOORS, MINT_GAS_BUFFER, TX_GAS_BUFFER, RECEIPT_TIMEOUT
from services.exceptions import LedgerError, LedgerErrorKind, LedgerRejected
from utils.session_utils import is_valid_address

logger = logging.getLogger(__name__)

CONTRACT_NAME = 'SupplyChainTokens'
ARTIFACTS_DIR = Path(__file__).parent.parent / 'contracts' / 'artifacts'
BATCH_MINTED_SIGNATURE = 'BatchMinted(uint256,uint256,address,string,uint256,uint256)'


def load_contract_abi(contract_name=CONTRACT_NAME, artifacts_dir=None):
    """Load a contract ABI from the artifacts directory"""
    abi_file = Path(artifacts_dir or ARTIFACTS_DIR) / f'{contract_name}.json'
    if not abi_file.exists():
        raise FileNotFoundError(f"ABI artifact not found: {abi_file}")
    with open(abi_file, 'r') as f:
        abi_data = json.load(f)
    logger.debug(f"Loaded {contract_name} ABI from {abi_file}")
    return abi_data['abi']


def _to_bytes(value):
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith('0x') else value)
    return bytes(value)


def _hex(value):
    if isinstance(value, str):
        return value if value.startswith('0x') else '0x' + value
    h = bytes(value).hex()
    return h if h.startswith('0x') else '0x' + h


class LedgerClient:
    """Connection handle to the token contract; one instance per process"""

    def __init__(self, w3, contract_address, abi, private_keys=None, chain_id=None,
                 receipt_timeout=RECEIPT_TIMEOUT):
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = w3.eth.contract(address=self.contract_address, abi=abi)
        self.receipt_timeout = receipt_timeout
        self._chain_id = chain_id

        # Signer accounts keyed by lower-cased address
        self.accounts = {}
        for key in private_keys or []:
            account = Account.from_key(key)
            self.accounts[account.address.lower()] = account

        self._sender_locks = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_rpc(cls, rpc_url, contract_address, private_keys=None, chain_id=None, artifacts_dir=None):
        logger.info(f"🔗 Connecting to ledger at: {rpc_url}")
        w3 = Web3(Web3.HTTPProvider(rpc_url))
        abi = load_contract_abi(CONTRACT_NAME, artifacts_dir)
        client = cls(w3, contract_address, abi, private_keys=private_keys, chain_id=chain_id)
        logger.info(f"✅ Ledger client ready for {client.contract_address} "
                    f"with {len(client.accounts)} signer(s)")
        return client

    @property
    def chain_id(self):
        if self._chain_id is None:
            self._chain_id = self._call(lambda: self.w3.eth.chain_id, 'chain_id')
        return self._chain_id

    def signer_addresses(self):
        return list(self.accounts.keys())

    # Writes

    def mint_batch(self, sender, batch_number, template_id, quantity, production_date,
                   expiry_date, carbon_footprint, plant_id, metadata_uri, data=b''):
        """Mint a batch token. Carbon is integer kg. Returns tx info plus the new token id."""
        self._require(isinstance(batch_number, int) and batch_number > 0, "Batch number must be a positive integer")
        self._require(bool(template_id), "Template id is required")
        self._require(bool(plant_id), "Plant id is required")
        self._require(isinstance(quantity, int) and quantity > 0, "Quantity must be a positive integer")
        self._require(isinstance(carbon_footprint, int) and carbon_footprint > 0,
                      "Carbon footprint must be a positive integer number of kg")
        self._require(isinstance(production_date, int) and production_date > 0, "Production date is required")

        fn = self.contract.functions.mintBatch(
            batch_number,
            str(template_id),
            quantity,
            production_date,
            expiry_date or 0,
            carbon_footprint,
            str(plant_id),
            metadata_uri or '',
            data,
        )
        receipt = self._send(sender, fn, MINT_GAS_BUFFER, f"mintBatch #{batch_number}")
        event = self.parse_batch_minted_event(receipt)
        result = self._tx_result(receipt)
        result['token_id'] = event['token_id']
        return result

    def transfer_to_partner(self, sender, to, token_id, quantity, reason='', metadata=''):
        self._require(is_valid_address(to), "Recipient address is invalid")
        self._require(to.lower() != (sender or '').lower(), "Cannot transfer to yourself")
        self._require(isinstance(token_id, int) and token_id > 0, "Token id must be a positive integer")
        self._require(isinstance(quantity, int) and quantity > 0, "Quantity must be a positive integer")

        fn = self.contract.functions.transferToPartner(
            Web3.to_checksum_address(to), token_id, quantity, reason or '', metadata or ''
        )
        receipt = self._send(sender, fn, TX_GAS_BUFFER, f"transferToPartner token {token_id}")
        return self._tx_result(receipt)

    def burn_component_tokens(self, sender, token_id, quantity, reason=''):
        self._require(isinstance(token_id, int) and token_id > 0, "Token id must be a positive integer")
        self._require(isinstance(quantity, int) and quantity > 0, "Quantity must be a positive integer")

        fn = self.contract.functions.burnComponentTokens(token_id, quantity, reason or '')
        receipt = self._send(sender, fn, TX_GAS_BUFFER, f"burnComponentTokens token {token_id}")
        return self._tx_result(receipt)

    # Reads

    def balance_of(self, address, token_id):
        self._require(is_valid_address(address), "Address is invalid")
        checksum = Web3.to_checksum_address(address)
        return int(self._call(lambda: self.contract.functions.balanceOf(checksum, token_id).call(), 'balanceOf'))

    def get_batch_info(self, token_id):
        info = self._call(lambda: self.contract.functions.getBatchInfo(token_id).call(), 'getBatchInfo')
        return {
            'batch_number': int(info[0]),
            'manufacturer': info[1].lower(),
            'template_id': info[2],
            'quantity': int(info[3]),
            'production_date': int(info[4]),
            'expiry_date': int(info[5]),
            'carbon_footprint': int(info[6]),
            'plant_id': info[7],
            'metadata_uri': info[8],
            'is_active': bool(info[9]),
        }

    def get_current_token_counter(self):
        return int(self._call(lambda: self.contract.functions.getCurrentTokenId().call(), 'getCurrentTokenId'))

    def get_all_minted_tokens(self):
        # Token ids start at 1; the counter holds the next id to be minted
        return list(range(1, self.get_current_token_counter()))

    def get_user_token_balances(self, address):
        self._require(is_valid_address(address), "Address is invalid")
        # Linear in the number of minted tokens; needs an indexed view once the ledger grows
        balances = []
        for token_id in self.get_all_minted_tokens():
            try:
                balance = self.balance_of(address, token_id)
                if balance <= 0:
                    continue
                batch_info = self.get_batch_info(token_id)
            except LedgerError as e:
                logger.warning(f"⚠️ Skipping token {token_id} in balances of {address}: {e}")
                continue
            balances.append({'token_id': token_id, 'balance': balance, 'batch_info': batch_info})
        return balances

    def get_token_id_by_batch(self, batch_number, manufacturer):
        self._require(is_valid_address(manufacturer), "Manufacturer address is invalid")
        checksum = Web3.to_checksum_address(manufacturer)
        token_id = self._call(lambda: self.contract.functions.getTokenIdByBatch(batch_number, checksum).call(),
                              'getTokenIdByBatch')
        return int(token_id) or None

    def get_mint_receipt(self, tx_hash):
        """Fetch a mined mint receipt and return tx info plus the parsed BatchMinted event"""
        receipt = self._call(lambda: self.w3.eth.get_transaction_receipt(tx_hash), 'get_transaction_receipt')
        if receipt.get('status') != 1:
            raise LedgerRejected(f"Transaction {tx_hash} failed on-chain", tx_hash=tx_hash)
        result = self._tx_result(receipt)
        result.update(self.parse_batch_minted_event(receipt))
        return result

    def get_transaction_status(self, tx_hash):
        """'confirmed', 'failed' (reverted) or 'pending' (no receipt yet)"""
        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = self._call(fetch, 'get_transaction_receipt')
        if receipt is None:
            return 'pending'
        return 'confirmed' if receipt.get('status') == 1 else 'failed'

    def parse_batch_minted_event(self, receipt):
        """Extract the BatchMinted event from a receipt's logs"""
        topic = bytes(Web3.keccak(text=BATCH_MINTED_SIGNATURE))
        for log in receipt.get('logs', []):
            if log['address'].lower() != self.contract_address.lower():
                continue
            topics = [_to_bytes(t) for t in log['topics']]
            if len(topics) < 4 or topics[0] != topic:
                continue
            template_id, quantity, carbon_footprint = decode(['string', 'uint256', 'uint256'], _to_bytes(log['data']))
            return {
                'token_id': int.from_bytes(topics[1], 'big'),
                'batch_number': int.from_bytes(topics[2], 'big'),
                'manufacturer': '0x' + topics[3][-20:].hex(),
                'template_id': template_id,
                'quantity': quantity,
                'carbon_footprint': carbon_footprint,
            }
        raise LedgerError(LedgerErrorKind.REJECTED, "BatchMinted event not found in transaction receipt",
                          tx_hash=_hex(receipt['transactionHash']) if receipt.get('transactionHash') else None)

    # Internals

    def _require(self, condition, message):
        if not condition:
            raise LedgerError(LedgerErrorKind.INVALID_REQUEST, message)

    def _get_account(self, sender):
        account = self.accounts.get((sender or '').lower())
        if account is None:
            raise LedgerError(LedgerErrorKind.SIGNER_REJECTED, f"No signing key available for {sender}")
        return account

    def _sender_lock(self, address):
        with self._locks_guard:
            return self._sender_locks.setdefault(address.lower(), threading.Lock())

    def _fee_params(self):
        floors = NETWORK_FEE_FLOORS.get(self.chain_id, {})
        latest = self.w3.eth.get_block('latest')
        base_fee = latest.get('baseFeePerGas')
        if base_fee is not None:
            priority = max(int(self.w3.eth.max_priority_fee), floors.get('max_priority_fee_per_gas', 0))
            max_fee = max(2 * int(base_fee) + priority, floors.get('max_fee_per_gas', 0))
            return {'maxFeePerGas': max_fee, 'maxPriorityFeePerGas': priority}
        return {'gasPrice': max(int(self.w3.eth.gas_price), floors.get('gas_price', 0))}

    def _send(self, sender, fn, gas_buffer, label):
        account = self._get_account(sender)
        tx_hash = None
        # Nonce fetch through receipt is serialised per sender
        with self._sender_lock(account.address):
            try:
                gas_estimate = fn.estimate_gas({'from': account.address})
                tx_params = {
                    'from': account.address,
                    'gas': int(gas_estimate * gas_buffer),
                    'nonce': self.w3.eth.get_transaction_count(account.address, 'pending'),
                    'chainId': self.chain_id,
                }
                fees = self._fee_params()
                tx_params.update(fees)
                logger.info(f"🔧 {label}: from={account.address} gas={tx_params['gas']} "
                            f"nonce={tx_params['nonce']} fees={fees}")

                tx = fn.build_transaction(tx_params)
                signed_tx = account.sign_transaction(tx)
                # Handle both old and new eth-account versions
                raw_tx = getattr(signed_tx, 'raw_transaction', None) or getattr(signed_tx, 'rawTransaction', None)
                tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
                logger.info(f"📤 {label} submitted: {_hex(tx_hash)}")
                receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
            except LedgerError:
                raise
            except Exception as e:
                error = self._translate_error(e, tx_hash)
                if error is None:
                    raise
                logger.warning(f"❌ {label} failed ({error.kind.value}): {e}")
                raise error from e

        if receipt.get('status') != 1:
            raise LedgerRejected(f"{label} reverted on-chain", tx_hash=_hex(receipt['transactionHash']))
        logger.info(f"✅ {label} confirmed in block {receipt.get('blockNumber')} (gas used {receipt.get('gasUsed')})")
        return receipt

    def _call(self, fn, label):
        try:
            return fn()
        except LedgerError:
            raise
        except Exception as e:
            error = self._translate_error(e)
            if error is None:
                raise
            raise error from e

    @staticmethod
    def _tx_result(receipt):
        return {
            'tx_hash': _hex(receipt['transactionHash']),
            'block_number': receipt.get('blockNumber'),
            'gas_used': receipt.get('gasUsed'),
        }

    @staticmethod
    def _translate_error(error, tx_hash=None):
        """Map a web3 / transport failure onto a LedgerError; None when it is not a ledger failure"""
        tx = _hex(tx_hash) if tx_hash is not None else None
        if isinstance(error, ContractLogicError):
            return LedgerRejected(str(error), tx_hash=tx)
        if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                              requests.exceptions.HTTPError, ConnectionError, TimeExhausted)):
            return LedgerError(LedgerErrorKind.NETWORK, f"Ledger network failure: {error}", tx_hash=tx)
        if isinstance(error, (Web3Exception, ValueError)):
            message = str(error).lower()
            if 'insufficient funds' in message:
                kind = LedgerErrorKind.INSUFFICIENT_FUNDS
            elif 'underpriced' in message or 'fee too low' in message or 'less than block base fee' in message:
                kind = LedgerErrorKind.UNDERPRICED
            elif 'user rejected' in message or 'user denied' in message:
                kind = LedgerErrorKind.SIGNER_REJECTED
            else:
                kind = LedgerErrorKind.REJECTED
            return LedgerError(kind, str(error), tx_hash=tx)
        return None
