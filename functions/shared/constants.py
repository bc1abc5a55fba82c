"""
Shared constants for FL4SH entitlements.
"""

# Claim lifecycle
CLAIM_STATUS_PENDING = "pending"
CLAIM_STATUS_PAID = "paid"
CLAIM_STATUS_CLAIMED = "claimed"

# Older checkout code wrote "created" for unpaid claims
LEGACY_CLAIM_STATUSES = {"created": CLAIM_STATUS_PENDING}

# Parent invites
INVITE_STATUS_SENDING = "sending"
INVITE_STATUS_SENT = "sent"
INVITE_STATUS_FAILED = "failed"
DEFAULT_INVITE_DAILY_LIMIT = 3
INVITE_WINDOW_HOURS = 24

# Claim codes
CLAIM_CODE_MIN_LENGTH = 8
CLAIM_CODE_GROUP_SIZE = 4

# Webhooks
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300
EVENT_LEASE_SECONDS = 300
EMAIL_LEASE_SECONDS = 60
BILLING_EVENT_TTL_DAYS = 90

# Stored error messages are truncated to this length
MAX_ERROR_LENGTH = 1000

# Metadata keys on the Stripe subscription
METADATA_STUDENT_USER_ID = "student_user_id"
METADATA_PARENT_CLAIM_ID = "parent_claim_id"

# External APIs
REVENUECAT_API = "https://api.revenuecat.com/v2"
SENDGRID_API = "https://api.sendgrid.com"

PRO_TIER = "pro"

# Timeouts
DEFAULT_TIMEOUT = 15.0
