# backend/config/constants.py

from config.env import DEFAULT_PLATFORM_FEE_PERCENT

# -----------------------------
# MONEY
# -----------------------------

MINOR_UNIT = "0.01"                   # quantum for round-half-up
DEFAULT_CURRENCY = "PHP"

# -----------------------------
# PAYOUT PERIODS
# -----------------------------

PERIOD_ANCHOR_WEEKDAY = 2             # Monday=0 ... Wednesday=2
PERIOD_LENGTH_DAYS = 7
PAYOUT_DAY_OF_WEEK = 5                # Friday (0=Sunday), display only

DEFAULT_PAYOUT_SETTINGS = {
    "default_platform_fee_percentage": DEFAULT_PLATFORM_FEE_PERCENT,
    "minimum_payout_amount": 0,
    "cutoff_day_of_week": 3,          # Wednesday (0=Sunday)
    "payout_day_of_week": PAYOUT_DAY_OF_WEEK,
}

# Invoice documents only list this many orders; the rest render as "+K more"
ORDER_SUMMARY_LIMIT = 50

# -----------------------------
# ORDERS / BATCHES
# -----------------------------

RECENT_STATUS_HISTORY_SIZE = 5
EMBEDDED_ITEMS_LIMIT = 20             # larger orders keep items in order_items
BATCH_SCAN_LIMIT = 5000
BATCH_MAX_RANGE_DAYS = 366

# -----------------------------
# VOUCHERS
# -----------------------------

MONETARY_REFUND_DELAY_DAYS = 14
ADMIN_MESSAGE_MIN_LENGTH = 10
ADMIN_MESSAGE_MAX_LENGTH = 1000

# -----------------------------
# SURVEYS
# -----------------------------

SURVEY_POSITIVE_THRESHOLD = 3.5

# -----------------------------
# LISTINGS
# -----------------------------

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
