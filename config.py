"""
Runtime settings for the order desk API.

Everything is read from the environment once at import time. The territory
tags ("bits") are configuration data so a deployment can change them without
touching order or aggregation logic.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", 5000))

# Security settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 8))

# Order numbers: one strategy per deployment (counter, derive, random)
ORDER_NUMBER_STRATEGY = os.getenv("ORDER_NUMBER_STRATEGY", "counter").lower()
ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "ORD")
ORDER_NUMBER_PAD = int(os.getenv("ORDER_NUMBER_PAD", 3))

DEFAULT_BITS = [
    "Turori",
    "Naldurg & Jalkot",
    "Gunjoti & Murum",
    "Dalimb & Yenegur",
    "Sastur & Makhani",
    "Narangwadi & Killari",
    "Andur",
    "Omerga",
]


def _parse_bits(raw):
    if not raw:
        return list(DEFAULT_BITS)
    return [b.strip() for b in raw.split(",") if b.strip()]


BITS = _parse_bits(os.getenv("BITS"))
TOTAL_BITS = int(os.getenv("TOTAL_BITS", len(BITS)))

UNITS = ["Pc", "Outer", "Case"]
ORDER_STATUSES = ["Pending", "Completed"]

# Completed orders at least this many days old may be swept
RETENTION_DAYS = int(os.getenv("RETENTION_DAYS", 31))

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
