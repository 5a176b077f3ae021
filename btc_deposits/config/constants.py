"""
Application constants.

Centralized constants for the deposit monitor.
"""

# ========================================================================
# CHAIN EXPLORER CONSTANTS
# ========================================================================

# Blockstream Esplora API base URLs per network
CHAIN_API_URLS = {
    "mainnet": "https://blockstream.info/api",
    "testnet": "https://blockstream.info/testnet/api",
}

# Human-facing explorer base URLs per network
EXPLORER_URLS = {
    "mainnet": "https://blockstream.info",
    "testnet": "https://blockstream.info/testnet",
}

CHAIN_API_USER_AGENT = "btc-deposit-monitor/0.1"

# HTTP statuses treated as transient (retried with backoff)
CHAIN_RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})

# ========================================================================
# ADDRESS CONSTANTS
# ========================================================================

# Native SegWit (bech32) human-readable prefixes per network
ADDRESS_PREFIXES = {
    "mainnet": "bc1q",
    "testnet": "tb1q",
}
DEFAULT_ADDRESS_TYPE = "p2wpkh"

QR_CODE_SERVICE_URL = "https://api.qrserver.com/v1/create-qr-code/"
QR_CODE_SIZE = "256x256"

SATOSHIS_PER_BTC = 100_000_000

# ========================================================================
# MONITORING CONSTANTS
# ========================================================================

# Upper bound for concurrent in-flight chain queries
MONITOR_MAX_CONCURRENCY_LIMIT = 16

# Startup delay used when MONITOR_STARTUP_DELAY_SECONDS is not set
MONITOR_STARTUP_DELAY_PRODUCTION = 30.0
MONITOR_STARTUP_DELAY_DEFAULT = 5.0

# Max payments picked per tick by the mint (act) phase
MINT_BATCH_SIZE = 50


# ========================================================================
# TASK QUEUE CONSTANTS
# ========================================================================

# Redis key namespace shared by all deposit monitor actors
TASK_QUEUE_NAMESPACE = "btc-deposits"

# Actor retries for transient failures (database or Redis hiccups)
TASK_MAX_RETRIES = 3
TASK_MIN_BACKOFF_MS = 1_000
TASK_MAX_BACKOFF_MS = 60_000
