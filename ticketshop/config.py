# ticketshop/config.py
import os

# ----------------------------
# Database
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./ticketshop.db")

# ----------------------------
# Shop timing (seconds)
# ----------------------------
# the lottery window that starts at a ticket's availableFrom
GRACE_PERIOD_WINDOW = float(os.getenv("GRACE_PERIOD_WINDOW_SECONDS", 5 * 60))
# how long an unpaid hold stays in the cart
TIME_TO_BUY = float(os.getenv("TIME_TO_BUY_SECONDS", 30 * 60))
# 0 disables the background sweep
EXPIRY_SWEEP_INTERVAL = float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", 60))

# never show clients more resolution than this for tickets left
TICKETS_LEFT_RESOLUTION = 10
# how long closed tickets stay in the listing
TICKET_LISTING_DAYS = 10

# ----------------------------
# Payments
# ----------------------------
CURRENCY = os.getenv("CURRENCY", "sek")
PASS_ON_TRANSACTION_FEE = os.getenv("PASS_ON_TRANSACTION_FEE", "1") == "1"
TRANSACTION_FEE_PERCENT = float(os.getenv("TRANSACTION_FEE_PERCENT", "0.015"))
TRANSACTION_FEE_FIXED = int(os.getenv("TRANSACTION_FEE_FIXED", "180"))  # öre

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

# ----------------------------
# Collaborators
# ----------------------------
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
