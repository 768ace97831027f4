# BoostBackend/config.py
# Environment-driven settings for the boost engine and its collaborators.

import os
from decimal import Decimal
from dotenv import load_dotenv
load_dotenv()

# Slot pool
BOOST_SLOT_COUNT = int(os.getenv("BOOST_SLOT_COUNT", "5"))
MAX_BOOST_HOURS = int(os.getenv("MAX_BOOST_HOURS", "48"))

# $5 buys one hour of boost time
USD_PER_HOUR = Decimal(os.getenv("BOOST_USD_PER_HOUR", "5"))
MIN_CONTRIBUTION = Decimal(os.getenv("BOOST_MIN_CONTRIBUTION", "5"))
MAX_CONTRIBUTION = USD_PER_HOUR * MAX_BOOST_HOURS  # $240 = 48h

# Background jobs (seconds)
SWEEPER_ENABLED = os.getenv("BOOST_SWEEPER_ENABLED", "1").lower() in ("1", "true", "yes")
SWEEP_INTERVAL_SEC = int(os.getenv("BOOST_SWEEP_INTERVAL_SEC", "5"))
RECONCILE_INTERVAL_SEC = int(os.getenv("BOOST_RECONCILE_INTERVAL_SEC", "60"))
RATE_REFRESH_SEC = int(os.getenv("RATE_REFRESH_SEC", "300"))

# Payment (Substrate)
SUBSTRATE_WS_URL = os.getenv("SUBSTRATE_WS_URL", "ws://127.0.0.1:9944")
SS58_FORMAT = int(os.getenv("SS58_FORMAT", "42"))
PAYMENT_TIMEOUT_SEC = float(os.getenv("PAYMENT_TIMEOUT_SEC", "60"))
PAYMENT_PALLET = os.getenv("BOOST_PAYMENT_PALLET", "Balances")
PAYMENT_CALL = os.getenv("BOOST_PAYMENT_CALL", "transfer_keep_alive")
PAYMENT_WAIT_FINALIZATION = os.getenv("BOOST_PAYMENT_WAIT_FINALIZATION", "0").lower() in ("1", "true", "yes")
TREASURY_ACCOUNT = os.getenv("BOOST_TREASURY_ACCOUNT", "")
CHAIN_DECIMALS = int(os.getenv("CHAIN_DECIMALS", "12"))

# Exchange rate (USD price of one chain token)
RATE_URL = os.getenv(
    "RATE_URL",
    "https://api.coingecko.com/api/v3/simple/price?ids=polkadot&vs_currencies=usd",
)
RATE_COIN_ID = os.getenv("RATE_COIN_ID", "polkadot")
RATE_TIMEOUT_SEC = float(os.getenv("RATE_TIMEOUT_SEC", "5"))
DEFAULT_RATE = Decimal(os.getenv("DEFAULT_RATE", "100"))  # used until the first successful fetch

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_IN_PROD")
JWT_ALG = "HS256"
JWT_TTL_MIN = int(os.getenv("JWT_TTL_MIN", "60"))

# Wallets allowed to trigger a manual sweep (comma-separated); empty = any signed-in wallet
ADMIN_WALLETS = {w.strip() for w in os.getenv("BOOST_ADMIN_WALLETS", "").split(",") if w.strip()}
