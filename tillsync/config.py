# Configuration - config.json loading with defaults and environment overrides

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent.parent / 'config.json'

DEFAULTS: Dict[str, Any] = {
    # Client side (till)
    'db_path': 'tillsync_client.db',
    'server_url': None,
    'api_key': None,
    'transactions_path': '/api/transactions',
    'request_timeout': 30,
    'max_retries': 3,
    'retry_delay': 5,
    'health_check_interval': 15,
    # Server side (ledger)
    'ledger_db_path': 'tillsync_ledger.db',
    'http_port': 8080,
    # Receipts
    'printer_destination': None,
    'printer_timeout': 5,
    'receipt_encoding': 'cp1252',
    'receipt_width': 32,
    'store_name': 'TillSync Store',
    # Logging
    'log_path': None,
    'log_level': 'INFO',
    'log_levels': {'urllib3': 'WARNING'},
    'log_max_bytes': 5 * 1024 * 1024,
    'log_backup_count': 5,
    'log_console': True,
}

# Environment variables win over config.json
ENV_OVERRIDES = {
    'TILLSYNC_SERVER_URL': 'server_url',
    'TILLSYNC_API_KEY': 'api_key',
    'TILLSYNC_DB_PATH': 'db_path',
    'TILLSYNC_LEDGER_DB_PATH': 'ledger_db_path',
    'TILLSYNC_PRINTER': 'printer_destination',
    'TILLSYNC_LOG_LEVEL': 'log_level',
}


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Return DEFAULTS merged with config.json (if present) and TILLSYNC_* env vars."""
    config = dict(DEFAULTS)
    config_path = Path(path) if path else CONFIG_PATH
    if config_path.exists():
        try:
            with open(config_path) as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                config.update(loaded)
            else:
                logger.warning("Ignoring %s: top level is not an object", config_path)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s, using defaults: %s", config_path, e)

    env = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            config[key] = env[var]
    return config
