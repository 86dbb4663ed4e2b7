# Service Configuration
# Values come from the environment; defaults target a local Hardhat node.
import os

EXTERNAL_IP = os.environ.get('EXTERNAL_IP', '127.0.0.1')
FLASK_PORT = int(os.environ.get('FLASK_PORT', 5000))
HARDHAT_PORT = int(os.environ.get('HARDHAT_PORT', 8545))
FLASK_URL = f"http://{EXTERNAL_IP}:{FLASK_PORT}"
LOCAL_HARDHAT_URL = f"http://127.0.0.1:{HARDHAT_PORT}"

# Ledger
RPC_URL = os.environ.get('RPC_URL') or LOCAL_HARDHAT_URL
CHAIN_ID = int(os.environ.get('CHAIN_ID', 31337))
CONTRACT_ADDRESS = os.environ.get('CONTRACT_ADDRESS')  # Falls back to the Contract registry
CONTRACT_TYPE = 'SupplyChainTokens'
# Comma separated list of signer keys managed by the service
LEDGER_PRIVATE_KEYS = [k.strip() for k in os.environ.get('LEDGER_PRIVATE_KEYS', '').split(',') if k.strip()]
RECEIPT_TIMEOUT = int(os.environ.get('RECEIPT_TIMEOUT', 300))

MINT_GAS_BUFFER = 2.0  # 100% headroom for mint
TX_GAS_BUFFER = 1.2    # 20% headroom for transfer and burn

GWEI = 10 ** 9
# Minimum fees per chain id; quoted network fees are raised to these, never lowered
NETWORK_FEE_FLOORS = {
    43113: {'gas_price': 25 * GWEI, 'max_fee_per_gas': 30 * GWEI, 'max_priority_fee_per_gas': 2 * GWEI},  # Avalanche Fuji
    43114: {'gas_price': 25 * GWEI, 'max_fee_per_gas': 30 * GWEI, 'max_priority_fee_per_gas': 2 * GWEI},  # Avalanche C-Chain
}

# Database
DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///supplychain.db')

# Composition resolver
RESOLVER_MAX_WORKERS = int(os.environ.get('RESOLVER_MAX_WORKERS', 8))
RESOLVE_TIMEOUT = float(os.environ.get('RESOLVE_TIMEOUT', 30))

# Batches of non-raw templates must declare at least one component
REQUIRE_COMPONENTS_FOR_ASSEMBLIES = os.environ.get('REQUIRE_COMPONENTS_FOR_ASSEMBLIES', 'true').lower() == 'true'

# Public base for ERC-1155 metadata URIs sent at mint time
METADATA_BASE_URL = os.environ.get('METADATA_BASE_URL', f"{FLASK_URL}/api/metadata")

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
DEBUG_LOG_FILE = os.environ.get('DEBUG_LOG_FILE')  # e.g. logs/supplychain_debug.log
