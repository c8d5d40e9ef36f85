import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinicpay.db")

# Frontend base URL for payment return/cancel redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# PayOS Configuration
PAYOS_CLIENT_ID = os.getenv("PAYOS_CLIENT_ID")
PAYOS_API_KEY = os.getenv("PAYOS_API_KEY")
# Shared checksum key: signs outbound link requests and verifies inbound webhooks
PAYOS_CHECKSUM_KEY = os.getenv("PAYOS_CHECKSUM_KEY")
PAYOS_API_URL = os.getenv("PAYOS_API_URL", "https://api-merchant.payos.vn")
PAYOS_TIMEOUT_SECONDS = float(os.getenv("PAYOS_TIMEOUT_SECONDS", "10"))
PAYOS_MAX_RETRIES = int(os.getenv("PAYOS_MAX_RETRIES", "3"))
PAYOS_RETRY_DELAY_SECONDS = float(os.getenv("PAYOS_RETRY_DELAY_SECONDS", "0.5"))

# Unpaid booking windows (minutes) before the sweeper expires the payment
APPOINTMENT_PAYMENT_WINDOW_MINUTES = int(os.getenv("APPOINTMENT_PAYMENT_WINDOW_MINUTES", "15"))
CONSULTATION_PAYMENT_WINDOW_MINUTES = int(os.getenv("CONSULTATION_PAYMENT_WINDOW_MINUTES", "10"))

# Order code allocation
ORDER_CODE_COLLISION_BUDGET = int(os.getenv("ORDER_CODE_COLLISION_BUDGET", "5"))

# Upper bound on one poll round-trip (including gateway retries)
PAYMENT_POLL_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_POLL_TIMEOUT_SECONDS", "15"))

# Background poll: only records at least this old are polled by the worker
PAYMENT_POLL_MIN_AGE_SECONDS = int(os.getenv("PAYMENT_POLL_MIN_AGE_SECONDS", "60"))
PAYMENT_POLL_BATCH_SIZE = int(os.getenv("PAYMENT_POLL_BATCH_SIZE", "50"))
