import os
from pathlib import Path

from dotenv import load_dotenv

from .domain.scheduling.phases import SchedulingSettings

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
# Pin the API version the payload parsing was written against; empty uses the account default
STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION") or None

# Price ids per account type: base pickup and seasonal 2nd pickup
STRIPE_PRICE_INDIVIDUAL_BASE = os.getenv("STRIPE_PRICE_INDIVIDUAL_BASE", "price_1SEEJ902heDK9w4zW4O0taqq")
STRIPE_PRICE_INDIVIDUAL_SEASONAL = os.getenv(
    "STRIPE_PRICE_INDIVIDUAL_SEASONAL", "price_1SEEJv02heDK9w4zus2PQtCK"
)
STRIPE_PRICE_BUSINESS_BASE = os.getenv("STRIPE_PRICE_BUSINESS_BASE", "price_1SEEKZ02heDK9w4zWLUKNrPi")
STRIPE_PRICE_BUSINESS_SEASONAL = os.getenv("STRIPE_PRICE_BUSINESS_SEASONAL", "price_1SEELH02heDK9w4zU4HxRJuY")

# "create_prorations", "always_invoice" or "none"
PRORATION_BEHAVIOR = os.getenv("PRORATION_BEHAVIOR", "create_prorations")

# Scheduler thresholds
LOOKAHEAD_HORIZON_DAYS = int(os.getenv("LOOKAHEAD_HORIZON_DAYS", "90"))
MAX_SCHEDULE_PHASES = int(os.getenv("MAX_SCHEDULE_PHASES", "10"))  # provider cap per schedule
METADATA_CHUNK_SIZE = int(os.getenv("METADATA_CHUNK_SIZE", "480"))  # provider allows ~500 chars per value

# Webhook event de-duplication window (24 hours)
EVENT_DEDUPE_TTL_SECONDS = int(os.getenv("EVENT_DEDUPE_TTL_SECONDS", "86400"))

# Optional JSON rule table; the built-in table is used when unset
SERVICE_AREAS_FILE = os.getenv("SERVICE_AREAS_FILE")

# Frontend base URL for CORS
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

SCHEDULING = SchedulingSettings(
    horizon_days=LOOKAHEAD_HORIZON_DAYS,
    max_schedule_phases=MAX_SCHEDULE_PHASES,
    proration_behavior=PRORATION_BEHAVIOR,
)
