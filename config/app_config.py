import os
from dotenv import load_dotenv

load_dotenv()

# Platform Fees
PLATFORM_FEE_PERCENT = int(os.getenv("PLATFORM_FEE_PERCENT", 5))

# Offers
OFFER_EXPIRY_DAYS = int(os.getenv("OFFER_EXPIRY_DAYS", 1))

# Withdrawal Settings
MAX_OPEN_WITHDRAWALS = int(os.getenv("MAX_OPEN_WITHDRAWALS", 3))

# Webhooks
STUCK_WEBHOOK_MINUTES = int(os.getenv("STUCK_WEBHOOK_MINUTES", 15))

# Stripe
CURRENCY = os.getenv("CURRENCY", "usd")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", 300))

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
