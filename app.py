import logging
import os
from pathlib import Path

from flask import Flask, jsonify

import config
from models import db

# Import utilities
from utils.api_utils import register_error_handlers
from utils.contract_utils import get_contract_address

# Import services
from services.ledger_client import LedgerClient

# Import routes
from routes.token import token_bp
from routes.batches import batches_bp
from routes.templates import templates_bp
from routes.plants import plants_bp
from routes.companies import companies_bp
from routes.partners import partners_bp
from routes.transfers import transfers_bp

logger = logging.getLogger(__name__)


def configure_logging(level=config.LOG_LEVEL, debug_log_file=config.DEBUG_LOG_FILE):
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    if debug_log_file:
        log_path = Path(debug_log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s'))
        logging.getLogger().addHandler(handler)


def create_app(test_config=None, ledger_client=None, connect_ledger=True):
    """Build the Flask app. A ledger client can be injected; otherwise one is built from config."""
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'change-this-in-production')
    app.config['SQLALCHEMY_DATABASE_URI'] = config.DATABASE_URL
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['RESOLVER_MAX_WORKERS'] = config.RESOLVER_MAX_WORKERS
    app.config['RESOLVE_TIMEOUT'] = config.RESOLVE_TIMEOUT
    app.config['REQUIRE_COMPONENTS_FOR_ASSEMBLIES'] = config.REQUIRE_COMPONENTS_FOR_ASSEMBLIES
    app.config['METADATA_BASE_URL'] = config.METADATA_BASE_URL
    if test_config:
        app.config.update(test_config)

    # Initialize database
    db.init_app(app)
    with app.app_context():
        db.create_all()

    register_error_handlers(app)

    # Register blueprints
    app.register_blueprint(token_bp)
    app.register_blueprint(batches_bp)
    app.register_blueprint(templates_bp)
    app.register_blueprint(plants_bp)
    app.register_blueprint(companies_bp)
    app.register_blueprint(partners_bp)
    app.register_blueprint(transfers_bp)

    if ledger_client is None and connect_ledger and not app.config.get('TESTING'):
        with app.app_context():
            contract_address = config.CONTRACT_ADDRESS or get_contract_address(config.CONTRACT_TYPE)
        if contract_address:
            ledger_client = LedgerClient.from_rpc(
                config.RPC_URL,
                contract_address,
                private_keys=config.LEDGER_PRIVATE_KEYS,
                chain_id=config.CHAIN_ID,
            )
        else:
            logger.warning("⚠️ No SupplyChainTokens contract configured; ledger operations are unavailable")
    app.extensions['ledger_client'] = ledger_client

    @app.route('/api/health')
    def health():
        return jsonify({'success': True, 'ledger_configured': app.extensions['ledger_client'] is not None})

    return app


if __name__ == '__main__':
    configure_logging()
    app = create_app()
    app.run(debug=True, host='0.0.0.0', port=config.FLASK_PORT)
