"""
Points Ledger Configuration and Constants

Pricing, vendor routing, gateway endpoints and error messages are defined here.
Points are fixed-point with 3 decimals and are stored as integer thousandths.
"""

from datetime import timedelta

# ==================== POINTS ====================
POINTS_SCALE = 1000  # stored value = points * POINTS_SCALE

DEFAULT_RATE = 1.0

ROLES = ("user", "agent", "admin")
PAY_FOR_OTHERS_ROLES = ("agent", "admin")

# ==================== TASK PRICING ====================
POINTS_PER_1000_CHARS = 3
MAX_TEXT_LENGTH = 3000

PLATFORMS = ("zhiwang", "weipu")
JOB_TYPES = ("reduce-plagiarism", "reduce-ai-rate")

# Human labels used as spend descriptions
TASK_LABELS = {
    ("zhiwang", "reduce-ai-rate"): "Reduce AI rate (CNKI)",
    ("weipu", "reduce-ai-rate"): "Reduce AI rate (VIP)",
    ("zhiwang", "reduce-plagiarism"): "Reduce plagiarism (CNKI)",
    ("weipu", "reduce-plagiarism"): "Reduce plagiarism (VIP)",
}

# ==================== VENDORS ====================
VENDOR_CHEEYUAN = "cheeyuan"
VENDOR_REDUCEAI = "reduceai"
VENDORS = (VENDOR_CHEEYUAN, VENDOR_REDUCEAI)

# Only CNKI AI-rate reduction goes to cheeyuan; everything else goes to reduceai
CHEEYUAN_ROUTES = {("zhiwang", "reduce-ai-rate")}

CHEEYUAN_PRODUCT_TYPE = 78
REDUCEAI_TOOL_NAMES = {
    "reduce-ai-rate": "onlyai",
    "reduce-plagiarism": "onlyjc",
}

VENDOR_ENV_VARS = {
    VENDOR_CHEEYUAN: ("CHEEYUAN_API_URL", "CHEEYUAN_LOGIN_ACCOUNT", "CHEEYUAN_LOGIN_PASSWORD"),
    VENDOR_REDUCEAI: ("REDUCEAI_API_URL", "REDUCEAI_LOGIN_USERNAME", "REDUCEAI_LOGIN_PASSWORD"),
}

DEFAULT_VENDOR_TIMEOUT_SECONDS = 20

# Tokens are assumed valid for a fixed window from refresh, not the vendor-declared one
CREDENTIAL_LIFETIME = timedelta(hours=8)
CREDENTIAL_KEY_PREFIX = "external-token:"

TASK_STATUSES = ("processing", "completed", "failed")

# ==================== ALIPAY ====================
ALIPAY_CONFIG = {
    "sandbox": {
        "gateway": "https://openapi-sandbox.dl.alipaydev.com/gateway.do",
    },
    "live": {
        "gateway": "https://openapi.alipay.com/gateway.do",
    },
}

ALIPAY_SETTINGS_TYPE = "alipay_settings"  # admin_settings fallback document
ALIPAY_QUERY_TIMEOUT_SECONDS = 15

ALIPAY_PAGE_PAY_METHOD = "alipay.trade.page.pay"
ALIPAY_QUERY_METHOD = "alipay.trade.query"
ALIPAY_PRODUCT_CODE = "FAST_INSTANT_TRADE_PAY"

# Notifications in any other status are acknowledged without touching the ledger
ACCEPTED_TRADE_STATUSES = ("TRADE_SUCCESS", "TRADE_FINISHED")

MAX_TOPUP_AMOUNT = 1_000_000  # whole currency units per order

DEFAULT_SUBJECT = "Points top-up"

PAYMENT_TYPE_PAY_FOR_DOWNLINE = "pay_for_downline"

# ==================== PAGINATION ====================
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "VALIDATION_ERROR": "Invalid request.",
    "NOT_FOUND": "Resource not found.",
    "PERMISSION_DENIED": "You are not allowed to perform this action.",
    "INSUFFICIENT_POINTS": "Not enough points for this task.",
    "CONFLICT": "The operation was already completed.",
    "ALREADY_REFUNDED": "This transaction has already been refunded.",
    "UPSTREAM_ERROR": "External service error. Please try again later.",
    "vendor_rejected": "The rewriting service rejected the task.",
    "vendor_timeout": "The rewriting service did not respond in time.",
    "CONFIGURATION_ERROR": "Server configuration is incomplete. Please contact the administrator.",
}
