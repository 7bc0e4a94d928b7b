import os
from dotenv import load_dotenv
from typing import List

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "emission")

# Telegram channel
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
TELEGRAM_API_BASE = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org")

# Profit "day" boundaries are computed in this timezone (pytz name)
TARGET_TIMEZONE = os.getenv("TARGET_TIMEZONE", "Europe/Kyiv")

# Profit event generation: number of increments per recipient per day
PROFIT_EVENTS_MIN = int(os.getenv("PROFIT_EVENTS_MIN", "4"))
PROFIT_EVENTS_MAX = int(os.getenv("PROFIT_EVENTS_MAX", "11"))

# Due-time notifier
NOTIFIER_POLL_SECONDS = int(os.getenv("NOTIFIER_POLL_SECONDS", "60"))
NOTIFIER_BATCH_SIZE = int(os.getenv("NOTIFIER_BATCH_SIZE", "500"))
CLAIM_TIMEOUT_MINUTES = int(os.getenv("CLAIM_TIMEOUT_MINUTES", "15"))

# Broadcast schedule defaults (operators can override them in MongoDB)
# Window is expressed in the reference timezone, which is a static UTC offset.
CARDS_MIN_PER_DAY = int(os.getenv("CARDS_MIN_PER_DAY", "4"))
CARDS_MAX_PER_DAY = int(os.getenv("CARDS_MAX_PER_DAY", "16"))
CARDS_START_TIME = os.getenv("CARDS_START_TIME", "07:49")
CARDS_END_TIME = os.getenv("CARDS_END_TIME", "22:30")
BROADCAST_UTC_OFFSET_HOURS = int(os.getenv("BROADCAST_UTC_OFFSET_HOURS", "2"))

# Broadcast pacing: Telegram allows ~30 messages/second per bot
BROADCAST_SEND_DELAY_SECONDS = float(os.getenv("BROADCAST_SEND_DELAY_SECONDS", "0.05"))
CHANNEL_MAX_PER_SECOND = int(os.getenv("CHANNEL_MAX_PER_SECOND", "30"))
CHANNEL_REQUEST_TIMEOUT = float(os.getenv("CHANNEL_REQUEST_TIMEOUT", "30"))

# Delivery retry policy
DELIVERY_MAX_ATTEMPTS = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "4"))
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
BACKOFF_CEILING_SECONDS = float(os.getenv("BACKOFF_CEILING_SECONDS", "60"))
THROTTLE_MARGIN_SECONDS = float(os.getenv("THROTTLE_MARGIN_SECONDS", "1"))

# Trading card artifact
CARD_TEMPLATE_PATH = os.getenv("CARD_TEMPLATE_PATH", "assets/card.png")
CARD_FIRST_ORDER_NUMBER = int(os.getenv("CARD_FIRST_ORDER_NUMBER", "5295"))


def parse_pairs() -> List[str]:
    """Parse the comma-separated list of trading pairs used in card captions"""
    raw = os.getenv("CARD_PAIRS", "BTC/USDT,ETH/USDT,SOL/USDT,BNB/USDT,XRP/USDT,TON/USDT")
    return [p.strip().upper() for p in raw.split(",") if p.strip()]

CARD_PAIRS = parse_pairs()

# Operator alerts
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()  # "slack", "discord" or "telegram"
ALERT_CHAT_ID = os.getenv("ALERT_CHAT_ID", "")
BROADCAST_SUMMARY_ALERTS = os.getenv("BROADCAST_SUMMARY_ALERTS", "true").lower() == "true"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE") or None
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"
