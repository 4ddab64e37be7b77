"""
Application Configuration
Centralized configuration for the booking core, read once from the environment
"""
import os

from dotenv import load_dotenv

load_dotenv()

# Supabase
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SCHEMA = os.getenv("SUPABASE_SCHEMA", "public")

# Mercado Pago (PIX provider)
MERCADO_PAGO_ACCESS_TOKEN = os.getenv("MERCADO_PAGO_ACCESS_TOKEN")
MERCADO_PAGO_API_URL = os.getenv("MERCADO_PAGO_API_URL", "https://api.mercadopago.com")
MERCADO_PAGO_PAYER_EMAIL = os.getenv("MERCADO_PAGO_PAYER_EMAIL", "cliente@example.com")

# Business timezone used for opening hours, lunch breaks and closed slots
AGENDA_TIMEZONE = os.getenv("AGENDA_TIMEZONE", "America/Sao_Paulo")

# Payments
PIX_EXPIRY_MINUTES = int(os.getenv("PIX_EXPIRY_MINUTES", "30"))
DEFAULT_ADVANCE_PERCENTAGE = int(os.getenv("DEFAULT_ADVANCE_PERCENTAGE", "50"))

# Confirmation listener (seconds)
PAYMENT_POLL_INTERVAL_SECONDS = float(os.getenv("PAYMENT_POLL_INTERVAL_SECONDS", "2"))
PAYMENT_POLL_DEBOUNCE_SECONDS = float(os.getenv("PAYMENT_POLL_DEBOUNCE_SECONDS", "2"))

# Read window for dashboards (days back from today)
HISTORY_LOOKBACK_DAYS = int(os.getenv("HISTORY_LOOKBACK_DAYS", "30"))

# Lifecycle janitor
# 0 keeps nothing scheduled before the start of today
PAST_APPOINTMENT_RETENTION_DAYS = int(os.getenv("PAST_APPOINTMENT_RETENTION_DAYS", "0"))
JANITOR_INTERVAL_MINUTES = int(os.getenv("JANITOR_INTERVAL_MINUTES", "5"))
JANITOR_ENABLED = os.getenv("JANITOR_ENABLED", "true").lower() == "true"

# Calendar fallback when a professional never configured business hours
DEFAULT_OPEN_TIME = os.getenv("DEFAULT_OPEN_TIME", "08:00")
DEFAULT_CLOSE_TIME = os.getenv("DEFAULT_CLOSE_TIME", "18:00")
DEFAULT_SLOT_INTERVAL_MINUTES = int(os.getenv("DEFAULT_SLOT_INTERVAL_MINUTES", "30"))
DEFAULT_ACTIVE_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday"]
DEFAULT_SERVICE_DURATION_MINUTES = 30
