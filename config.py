"""
Runtime configuration for The Life Journal API

Everything is read from the environment once at import time.
"""
import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "the-life-journal-db")
PORT = int(os.getenv("PORT", 8000))

SITE_DOMAIN = os.getenv("SITE_DOMAIN", "http://localhost:5173")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# base64-encoded Firebase service account JSON
FB_SERVICE_KEY = os.getenv("FB_SERVICE_KEY")

TOP_CONTRIBUTORS_LIMIT = int(os.getenv("TOP_CONTRIBUTORS_LIMIT", 5))
MOST_SAVED_LIMIT = 3

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
