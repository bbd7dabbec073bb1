# keygate_core/constants.py

# Content cipher (AES-256-GCM)
CONTENT_KEY_SIZE = 32
IV_SIZE = 12
TAG_SIZE = 16

# Key wrapping
LOCAL_FALLBACK_VERSION = 0   # keyVersion 0 = wrapped locally under SERVER_KEY_HEX
MASTER_KEY_SIZE = 32

# Buyer sealing (X25519 / crypto_box)
BUYER_PUBLIC_KEY_SIZE = 32

# Ledger
DEFAULT_SCAN_LIMIT = 40
MEMO_PROGRAM = "spl-memo"
DEFAULT_NETWORK = "solana-devnet"

# Listings
MAX_PRICE_LAMPORTS = 1_000_000_000_000
MAX_NAME_LEN = 200
MAX_DESCRIPTION_LEN = 2000
MAX_FILENAME_LEN = 255
DEFAULT_MIME = "application/octet-stream"
DEFAULT_ACCESS_TERMS = (
    "By purchasing this dataset, you agree to use it in compliance with EU Data Act "
    "and GDPR regulations. You may not redistribute or share this data without "
    "explicit permission."
)

# Orders
DEFAULT_ORDER_TTL_SECONDS = 3600
DEFAULT_REVOKE_REASON = "Revoked by data owner under EU Data Act rights"
DEFAULT_WITHDRAW_REASON = "Withdrawn by owner"

# Audit actions
ORDER_INITIATED = "ORDER_INITIATED"
PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
DATA_DELIVERED = "DATA_DELIVERED"
DELIVERY_HEALED = "DELIVERY_HEALED"
ACCESS_REVOKED = "ACCESS_REVOKED"
ORDER_EXPIRED = "ORDER_EXPIRED"
LISTING_CREATED = "LISTING_CREATED"
PURCHASE_INITIATED = "PURCHASE_INITIATED"
DATASET_WITHDRAWN = "DATASET_WITHDRAWN"
KEY_ROTATED = "KEY_ROTATED"
KEY_REWRAPPED = "KEY_REWRAPPED"
