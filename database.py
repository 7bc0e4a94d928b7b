from pymongo import ASCENDING, DESCENDING, MongoClient
from bson import ObjectId
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any
import config

# tz_aware: every datetime read back is UTC-aware, matching what the engine writes
client = MongoClient(config.DATABASE_URL, tz_aware=True)
db = client.get_database(config.DATABASE_NAME)

# Collections
users_collection = db["users"]
profit_events_collection = db["profit_events"]
broadcast_settings_collection = db["broadcast_settings"]
trading_posts_collection = db["trading_posts"]
broadcast_log_collection = db["broadcast_log"]
heartbeat_collection = db["heartbeat"]


def ensure_indexes():
    """Create indexes used by the engine's queries (called once at startup)"""
    profit_events_collection.create_index([("delivered", ASCENDING), ("claimed_at", ASCENDING), ("due_at", ASCENDING)])
    profit_events_collection.create_index([("recipient_id", ASCENDING), ("day", ASCENDING)])
    users_collection.create_index("telegram_id", unique=True)
    users_collection.create_index("status")
    trading_posts_collection.create_index("order_number", unique=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _oid(value) -> ObjectId:
    return value if isinstance(value, ObjectId) else ObjectId(value)


class ProfitEvent:
    """One scheduled increment of a recipient's daily synthetic profit"""

    OUTCOME_DELIVERED = "delivered"
    OUTCOME_UNREACHABLE = "unreachable"

    @staticmethod
    def create_batch(events: List[Dict[str, Any]]) -> List[ObjectId]:
        """Persist a whole day's batch for one recipient in a single insert"""
        if not events:
            return []
        created_at = utcnow()
        docs = []
        for event in events:
            docs.append({
                "recipient_id": event["recipient_id"],
                "amount": event["amount"],
                "due_at": event["due_at"],
                "daily_total": event["daily_total"],
                "day": event["day"],
                "delivered": False,
                "delivered_at": None,
                "outcome": None,
                "claimed_at": None,
                "claim_token": None,
                "attempts": 0,
                "last_error": None,
                "created_at": created_at,
            })
        result = profit_events_collection.insert_many(docs)
        return list(result.inserted_ids)

    @staticmethod
    def discard_pending(recipient_id: str, day: str) -> int:
        """Delete the day's undelivered events that no notifier currently holds"""
        result = profit_events_collection.delete_many({
            "recipient_id": recipient_id,
            "day": day,
            "delivered": False,
            "claimed_at": None,
        })
        return result.deleted_count

    @staticmethod
    def get_for_day(recipient_id: str, day: str) -> List[Dict]:
        cursor = profit_events_collection.find(
            {"recipient_id": recipient_id, "day": day}
        ).sort("due_at", ASCENDING)
        return list(cursor)

    @staticmethod
    def has_batch(recipient_id: str, day: str) -> bool:
        return profit_events_collection.count_documents(
            {"recipient_id": recipient_id, "day": day}
        ) > 0

    @staticmethod
    def visible_total(recipient_id: str, day: str, now: datetime = None) -> float:
        """Sum of the day's events whose due time has already elapsed"""
        now = now or utcnow()
        cursor = profit_events_collection.find({
            "recipient_id": recipient_id,
            "day": day,
            "due_at": {"$lte": now},
        })
        return sum(doc["amount"] for doc in cursor)

    @staticmethod
    def find_due(now: datetime, limit: int = 500) -> List[Dict]:
        """Due, undelivered, unclaimed events, earliest first"""
        cursor = profit_events_collection.find({
            "due_at": {"$lte": now},
            "delivered": False,
            "claimed_at": None,
        }).sort("due_at", ASCENDING).limit(limit)
        return list(cursor)

    @staticmethod
    def claim(event_id, token: str, now: datetime = None) -> bool:
        """
        Atomically claim one event for delivery.
        Returns False if it was delivered or claimed by someone else meanwhile.
        """
        result = profit_events_collection.update_one(
            {"_id": _oid(event_id), "delivered": False, "claimed_at": None},
            {"$set": {"claimed_at": now or utcnow(), "claim_token": token}},
        )
        return result.modified_count == 1

    @staticmethod
    def mark_delivered(event_id, token: str, outcome: str, attempts: int = 1) -> bool:
        """Flip delivered=true once; only the holder of the claim token can do it"""
        result = profit_events_collection.update_one(
            {"_id": _oid(event_id), "delivered": False, "claim_token": token},
            {
                "$set": {
                    "delivered": True,
                    "delivered_at": utcnow(),
                    "outcome": outcome,
                    "claimed_at": None,
                    "claim_token": None,
                },
                "$inc": {"attempts": attempts},
            },
        )
        return result.modified_count == 1

    @staticmethod
    def release(event_id, token: str, attempts: int = 0, error: str = None) -> bool:
        """Give a claimed event back so the next poll retries it"""
        result = profit_events_collection.update_one(
            {"_id": _oid(event_id), "delivered": False, "claim_token": token},
            {
                "$set": {"claimed_at": None, "claim_token": None, "last_error": error},
                "$inc": {"attempts": attempts},
            },
        )
        return result.modified_count == 1

    @staticmethod
    def release_stale_claims(timeout_minutes: int = 15, now: datetime = None) -> int:
        """Release claims left behind by a crashed poll"""
        cutoff = (now or utcnow()) - timedelta(minutes=timeout_minutes)
        result = profit_events_collection.update_many(
            {"delivered": False, "claimed_at": {"$lt": cutoff}},
            {"$set": {"claimed_at": None, "claim_token": None}},
        )
        return result.modified_count

    @staticmethod
    def get_day_stats(day: str) -> Dict[str, int]:
        stats = {"total": 0, "delivered": 0, "unreachable": 0, "pending": 0}
        for doc in profit_events_collection.find({"day": day}):
            stats["total"] += 1
            if not doc.get("delivered"):
                stats["pending"] += 1
            elif doc.get("outcome") == ProfitEvent.OUTCOME_UNREACHABLE:
                stats["unreachable"] += 1
            else:
                stats["delivered"] += 1
        return stats


class Recipient:
    """Bot users, owned by the CRM; the engine only reads them"""

    STATUS_ACTIVE = "ACTIVE"

    @staticmethod
    def get_eligible_ids() -> List[str]:
        """Chat ids of every ACTIVE account, queried fresh for each broadcast"""
        ids = []
        seen = set()
        cursor = users_collection.find(
            {"status": Recipient.STATUS_ACTIVE},
            {"telegram_id": 1},
        ).sort("_id", ASCENDING)
        for doc in cursor:
            telegram_id = doc.get("telegram_id")
            if telegram_id and telegram_id not in seen:
                seen.add(telegram_id)
                ids.append(str(telegram_id))
        return ids

    @staticmethod
    def get_funded() -> List[Dict]:
        """ACTIVE accounts with a positive balance (they earn daily profit)"""
        cursor = users_collection.find(
            {"status": Recipient.STATUS_ACTIVE, "balance": {"$gt": 0}},
            {"telegram_id": 1, "balance": 1},
        )
        return [
            {"telegram_id": str(doc["telegram_id"]), "balance": float(doc["balance"])}
            for doc in cursor
            if doc.get("telegram_id")
        ]

    @staticmethod
    def get_by_telegram_id(telegram_id: str) -> Optional[Dict]:
        return users_collection.find_one({"telegram_id": telegram_id})


class BroadcastSettingsStore:
    """Operator-editable broadcast settings; env values are the defaults"""

    _ID = "default"
    FIELDS = ("min_per_day", "max_per_day", "start_time", "end_time")

    @staticmethod
    def defaults() -> Dict[str, Any]:
        return {
            "min_per_day": config.CARDS_MIN_PER_DAY,
            "max_per_day": config.CARDS_MAX_PER_DAY,
            "start_time": config.CARDS_START_TIME,
            "end_time": config.CARDS_END_TIME,
            "utc_offset_hours": config.BROADCAST_UTC_OFFSET_HOURS,
        }

    @staticmethod
    def get() -> Dict[str, Any]:
        settings = BroadcastSettingsStore.defaults()
        stored = broadcast_settings_collection.find_one({"_id": BroadcastSettingsStore._ID})
        if stored:
            for field in BroadcastSettingsStore.FIELDS:
                if stored.get(field) is not None:
                    settings[field] = stored[field]
        return settings

    @staticmethod
    def update(**fields) -> Dict[str, Any]:
        changes = {
            k: v for k, v in fields.items()
            if k in BroadcastSettingsStore.FIELDS and v is not None
        }
        if changes:
            changes["updated_at"] = utcnow()
            broadcast_settings_collection.update_one(
                {"_id": BroadcastSettingsStore._ID},
                {"$set": changes},
                upsert=True,
            )
        return BroadcastSettingsStore.get()


class TradingPost:
    """Posted trading cards; the order number sequence lives here"""

    @staticmethod
    def next_order_number() -> int:
        last = trading_posts_collection.find_one({}, sort=[("order_number", DESCENDING)])
        if not last:
            return config.CARD_FIRST_ORDER_NUMBER
        return last["order_number"] + 1

    @staticmethod
    def create(order_number: int, pair: str, posted_at: datetime = None) -> str:
        result = trading_posts_collection.insert_one({
            "order_number": order_number,
            "pair": pair,
            "posted_at": posted_at or utcnow(),
        })
        return str(result.inserted_id)


class BroadcastLog:
    """One summary document per broadcast cycle"""

    @staticmethod
    def record(summary: Dict[str, Any]) -> str:
        doc = dict(summary)
        doc["recorded_at"] = utcnow()
        result = broadcast_log_collection.insert_one(doc)
        return str(result.inserted_id)

    @staticmethod
    def get_recent(limit: int = 10) -> List[Dict]:
        cursor = broadcast_log_collection.find().sort(
            [("recorded_at", DESCENDING), ("_id", DESCENDING)]
        ).limit(limit)
        return list(cursor)


class Heartbeat:
    _ID = "emission_engine"

    @staticmethod
    def beat(pid: int):
        heartbeat_collection.update_one(
            {"_id": Heartbeat._ID},
            {"$set": {"last_heartbeat": utcnow(), "pid": pid, "status": "running"}},
            upsert=True,
        )

    @staticmethod
    def stopped():
        heartbeat_collection.update_one(
            {"_id": Heartbeat._ID},
            {"$set": {"status": "stopped", "stopped_at": utcnow()}},
        )
