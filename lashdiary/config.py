import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./lashdiary.db")

# Business calendar
# All weekday and "today" calculations are bound to this zone, never the host's local offset
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Africa/Nairobi")
MIN_ADVANCE_NOTICE_HOURS = float(os.getenv("MIN_ADVANCE_NOTICE_HOURS", "24"))
DEFAULT_DATE_HORIZON_DAYS = int(os.getenv("DEFAULT_DATE_HORIZON_DAYS", "14"))
APPOINTMENT_DURATION_MINUTES = int(os.getenv("APPOINTMENT_DURATION_MINUTES", "120"))

# Reservation holds (pending bookings with no payment release their slot after this)
SLOT_HOLD_MINUTES = int(os.getenv("SLOT_HOLD_MINUTES", "15"))

# Client self-service
CLIENT_MANAGE_WINDOW_HOURS = max(int(os.getenv("CLIENT_MANAGE_WINDOW_HOURS", "72") or 72), 1)
RESCHEDULE_LOCKOUT_HOURS = int(os.getenv("RESCHEDULE_LOCKOUT_HOURS", "24"))

# Frontend base URL for manage links in emails
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Google Calendar (read-only busy lookups)
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REFRESH_TOKEN = os.getenv("GOOGLE_REFRESH_TOKEN")
CALENDAR_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_TIMEOUT_SECONDS", "5"))
# Off: only an event starting exactly on a slot blocks it
CALENDAR_BLOCK_OVERLAPS = os.getenv("CALENDAR_BLOCK_OVERLAPS", "false").lower() == "true"

# M-Pesa callback handling
# Shared secret appended to the registered CallBackURL as ?token=...
MPESA_CALLBACK_TOKEN = os.getenv("MPESA_CALLBACK_TOKEN")
MPESA_ALLOWED_IPS = [
    ip.strip() for ip in os.getenv("MPESA_ALLOWED_IPS", "").split(",") if ip.strip()
]
# Callback amounts are divided by this before being applied (100 = amounts arrive in cents)
MPESA_AMOUNT_DIVISOR = float(os.getenv("MPESA_AMOUNT_DIVISOR", "100"))
MPESA_CALLBACK_PERSIST_RETRIES = int(os.getenv("MPESA_CALLBACK_PERSIST_RETRIES", "2"))

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "LashDiary <hello@lashdiary.co.ke>")
OWNER_EMAIL = os.getenv("OWNER_EMAIL", "hello@lashdiary.co.ke")

# Rate limiting for public booking endpoints
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
