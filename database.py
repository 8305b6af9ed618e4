"""
MongoDB access for Community Era.

`db` is None when DATABASE_URL is not configured; routes check for that and
answer with a 500 instead of crashing at import time.
"""

import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING, MongoClient

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "community_era")

_client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = _client[DATABASE_NAME] if _client is not None else None


def get_db():
    """FastAPI dependency returning the active database handle."""
    return db


def create_document(database, collection_name: str, data: dict) -> str:
    """Insert a document with timestamps and return its id as a string.

    pymongo sets `_id` on `data` in place.
    """
    now = datetime.now(timezone.utc)
    data.setdefault("createdAt", now)
    data["updatedAt"] = now
    result = database[collection_name].insert_one(data)
    return str(result.inserted_id)


def ensure_indexes(database):
    reports = database["report"]
    # matcher lookup
    reports.create_index([("category", ASCENDING), ("status", ASCENDING), ("parentReport", ASCENDING)])
    # aggregator child lookup
    reports.create_index([("parentReport", ASCENDING)])
    reports.create_index([("createdAt", DESCENDING)])
    reports.create_index([("votes", DESCENDING)])

    database["vote"].create_index([("report", ASCENDING), ("user", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
