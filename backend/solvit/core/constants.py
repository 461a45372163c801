# backend/solvit/core/constants.py
"""Application-wide constants that are not environment tunables."""

BRAND_NAME = "Solvit"

DEFAULT_TIMEZONE = "Asia/Kolkata"

# Gateway amounts are integer paise.
PAISE_PER_RUPEE = 100

JOIN_TOKEN_TYPE = "session_join"
JOIN_TOKEN_ALGORITHM = "HS256"

IDEMPOTENCY_HEADER = "Idempotency-Key"
