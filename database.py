"""
Database Helper Functions

MongoDB wiring for the loan sync API. ``db`` is the process-wide handle;
handlers receive it through ``main.get_database`` which connects lazily.
"""
from __future__ import annotations
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from dotenv import load_dotenv
from pymongo import DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from schemas import Record, System, SYSTEM_KEY

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "mongodb://localhost:27017"
DEFAULT_DATABASE_NAME = "loan_sync"
NOTIFICATION_LIMIT = 200

USERS = "users"
LOANS = "loans"
NOTIFICATIONS = "notifications"
SYSTEM = "system"


def database_url_from_env() -> Optional[str]:
    return os.getenv("MONGODB_URI") or os.getenv("DATABASE_URL")


class Database:
    """Lazily connected MongoDB handle.

    ``ensure_connected`` is safe to call on every request: the first
    successful call pings the server, creates the unique indexes and seeds
    the System singleton, later calls return immediately. A failed attempt
    is recorded in ``error`` and retried on the next call.
    """

    def __init__(self, url: Optional[str] = None, name: Optional[str] = None,
                 client_factory: Callable[..., MongoClient] = MongoClient,
                 timeout_ms: Optional[int] = None):
        env_url = database_url_from_env()
        self.uri_provided = bool(url or env_url)
        self.url = url or env_url or DEFAULT_DATABASE_URL
        self.name = name or os.getenv("DATABASE_NAME", DEFAULT_DATABASE_NAME)
        self.timeout_ms = timeout_ms or int(os.getenv("MONGODB_TIMEOUT_MS", "5000"))
        self.client_factory = client_factory
        self.client = None
        self.connected = False
        self.error: Optional[str] = None
        self._lock = threading.RLock()

    def ensure_connected(self) -> bool:
        if self.connected:
            return True
        with self._lock:
            if self.connected:
                return True
            logger.info("Attempting to connect to MongoDB (database=%s)", self.name)
            try:
                self.get_client().admin.command("ping")
                self.ensure_indexes()
                self.seed_system()
            except PyMongoError as e:
                self.connected = False
                self.error = str(e) or repr(e)
                logger.exception("MongoDB connection failed")
                return False
            self.connected = True
            self.error = None
            logger.info("Successfully connected to MongoDB")
            return True

    def get_client(self):
        with self._lock:
            if self.client is None:
                self.client = self.client_factory(self.url, serverSelectionTimeoutMS=self.timeout_ms)
            return self.client

    def __getitem__(self, collection: str):
        return self.get_client()[self.name][collection]

    def ensure_indexes(self):
        for collection in (USERS, LOANS, NOTIFICATIONS):
            self[collection].create_index("id", unique=True)
        self[LOANS].create_index("userId")
        self[NOTIFICATIONS].create_index("userId")
        self[NOTIFICATIONS].create_index([("insertedAt", DESCENDING)])
        self[SYSTEM].create_index("key", unique=True)

    def seed_system(self):
        if self[SYSTEM].find_one({"key": SYSTEM_KEY}) is None:
            self[SYSTEM].insert_one(System().model_dump(by_alias=True))
            logger.info("Created default system settings")

    def status(self) -> dict:
        return {
            "connected": self.connected,
            "error": self.error,
            "uri_provided": self.uri_provided,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


db = Database()


def run_concurrently(*calls: Callable):
    """Run zero-argument callables on a thread pool, wait for all of them
    to settle, then return their results in order. The first failure is
    re-raised after every call has finished."""
    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        futures = [pool.submit(call) for call in calls]
        wait(futures)
    return [f.result() for f in futures]


def to_dict(doc):
    if not doc:
        return doc
    d = dict(doc)
    d.pop("_id", None)
    d.pop("insertedAt", None)
    return d


def get_documents(database: Database, collection: str, filter_dict: Optional[dict] = None,
                  sort: Optional[list] = None, limit: int = 0) -> List[dict]:
    cursor = database[collection].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [to_dict(d) for d in cursor]


def upsert_document(database: Database, collection: str, record: Record):
    """Replace the record with the same ``id`` or insert it. ``insertedAt``
    is kept from the stored document when there is one."""
    doc = record.to_document()
    existing = database[collection].find_one({"id": record.id}, {"insertedAt": 1})
    if existing and existing.get("insertedAt") is not None:
        doc["insertedAt"] = existing["insertedAt"]
    else:
        doc["insertedAt"] = datetime.now(timezone.utc)
    database[collection].replace_one({"id": record.id}, doc, upsert=True)


def upsert_documents(database: Database, collection: str, records: Iterable[Record]) -> int:
    count = 0
    for record in records:
        upsert_document(database, collection, record)
        count += 1
    return count


def load_snapshot(database: Database) -> dict:
    users, loans, notifications, system = run_concurrently(
        lambda: get_documents(database, USERS),
        lambda: get_documents(database, LOANS),
        lambda: get_documents(database, NOTIFICATIONS,
                              sort=[("insertedAt", DESCENDING), ("_id", DESCENDING)],
                              limit=NOTIFICATION_LIMIT),
        lambda: database[SYSTEM].find_one({"key": SYSTEM_KEY}),
    )
    settings = System.model_validate(to_dict(system) or {})
    return {
        "users": users,
        "loans": loans,
        "notifications": notifications,
        "budget": settings.budget,
        "rankProfit": settings.rank_profit,
    }


def update_system_field(database: Database, field: str, value):
    """Set one settings field on the singleton, creating it with defaults
    for the remaining fields when it does not exist yet."""
    defaults = System().model_dump(by_alias=True)
    defaults.pop("key")
    defaults.pop(field)
    database[SYSTEM].update_one(
        {"key": SYSTEM_KEY},
        {"$set": {field: value}, "$setOnInsert": defaults},
        upsert=True,
    )


def delete_user_cascade(database: Database, user_id: str) -> dict:
    user_res, loans_res, notifications_res = run_concurrently(
        lambda: database[USERS].delete_one({"id": user_id}),
        lambda: database[LOANS].delete_many({"userId": user_id}),
        lambda: database[NOTIFICATIONS].delete_many({"userId": user_id}),
    )
    return {
        "users": user_res.deleted_count,
        "loans": loans_res.deleted_count,
        "notifications": notifications_res.deleted_count,
    }
