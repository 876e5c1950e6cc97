"""
Centralized configuration for the HeatCare monitoring scheduler.
Values come from the environment (optionally a .env file).
"""

import os
from dotenv import load_dotenv

load_dotenv()

# --- Scheduling ---
MONITORING_TIMEZONE = os.getenv("MONITORING_TIMEZONE", "America/New_York")
DAILY_CHECKIN_HOUR = int(os.getenv("DAILY_CHECKIN_HOUR", "9"))
DAILY_CHECKIN_MINUTE = int(os.getenv("DAILY_CHECKIN_MINUTE", "0"))
EMERGENCY_FOLLOW_UP_MINUTES = int(os.getenv("EMERGENCY_FOLLOW_UP_MINUTES", "5"))

# --- Job store worker pool ---
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "3"))
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "5"))
JOB_BACKOFF_SECONDS = float(os.getenv("JOB_BACKOFF_SECONDS", "1.0"))
JOB_POLL_INTERVAL_SECONDS = float(os.getenv("JOB_POLL_INTERVAL_SECONDS", "1.0"))

# --- Weather sweep ---
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "1800"))
ALERT_DEDUP_TTL_SECONDS = int(os.getenv("ALERT_DEDUP_TTL_SECONDS", str(24 * 3600)))
ALERT_DEDUP_MAX_ENTRIES = int(os.getenv("ALERT_DEDUP_MAX_ENTRIES", "10000"))

# --- Delivery ---
DEFAULT_CHANNEL = os.getenv("DEFAULT_CHANNEL", "whatsapp")
OPS_ALERT_CHANNEL = os.getenv("OPS_ALERT_CHANNEL", "")
OPS_ALERT_RECIPIENT = os.getenv("OPS_ALERT_RECIPIENT", "")

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
