"""
Database Helper Functions

MongoDB helpers used by the karma service, the donation state machine and the
reconciliation jobs. Status and balance mutations go through filtered
find_one_and_update calls, so a filter doubles as the precondition of a
compare-and-set.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

from errors import ValidationError
from settings import settings

_client = None
db = None

if settings.database_url and settings.database_name:
    _client = MongoClient(settings.database_url)
    db = _client[settings.database_name]


def use_database(database, client=None) -> None:
    """Point the helpers at another database handle (tests, scripts)."""
    global db, _client
    db = database
    _client = client


def get_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def utcnow() -> datetime:
    # naive UTC at millisecond precision, which is what BSON round-trips
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def day_key(moment: datetime) -> str:
    return moment.date().isoformat()


# Helper: ensure dict

def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return data.copy()

# Helper: convert str id to ObjectId

def oid(id_val: Union[str, ObjectId]) -> ObjectId:
    if isinstance(id_val, ObjectId):
        return id_val
    try:
        return ObjectId(id_val)
    except (InvalidId, TypeError):
        raise ValidationError(f"Malformed id: {id_val!r}")


def _out(doc: Optional[dict]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    doc['id'] = str(doc.pop('_id'))
    return doc


def _query(id_or_filter: Union[str, ObjectId, dict]) -> dict:
    if isinstance(id_or_filter, dict):
        return id_or_filter
    return {"_id": oid(id_or_filter)}


@contextmanager
def transaction(session=None) -> Iterator[Any]:
    """Single transaction boundary for a group of writes.

    Nested calls reuse the outer session. Without MONGO_TRANSACTIONS (a
    standalone server, mongomock) this yields None and every write applies
    on its own.
    """
    if session is not None or _client is None or not settings.mongo_transactions:
        yield session
        return
    with _client.start_session() as new_session:
        with new_session.start_transaction():
            yield new_session


# Helper functions for common database operations

def create_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a single document with timestamp"""
    data_dict = _to_dict(data)
    now = utcnow()
    data_dict.setdefault('created_at', now)
    data_dict['updated_at'] = now

    result = get_db()[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: dict = None,
    limit: int = None,
    skip: int = 0,
    sort: Optional[List[tuple]] = None,
    session=None,
) -> List[Dict[str, Any]]:
    """Get documents from collection"""
    cursor = get_db()[collection_name].find(filter_dict or {}, session=session)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [_out(d) for d in cursor]


def get_document_by_id(collection_name: str, id_val: Union[str, ObjectId], session=None) -> Optional[Dict[str, Any]]:
    doc = get_db()[collection_name].find_one({"_id": oid(id_val)}, session=session)
    return _out(doc)


def find_one(collection_name: str, filter_dict: dict, session=None) -> Optional[Dict[str, Any]]:
    return _out(get_db()[collection_name].find_one(filter_dict, session=session))


def update_document(collection_name: str, id_or_filter: Union[str, ObjectId, dict], update_dict: dict, session=None) -> Optional[Dict[str, Any]]:
    """Update a document and return the updated version"""
    update = {"$set": {**update_dict, "updated_at": utcnow()}}
    doc = get_db()[collection_name].find_one_and_update(
        _query(id_or_filter), update, return_document=ReturnDocument.AFTER, session=session
    )
    return _out(doc)


def increment_field(collection_name: str, id_or_filter: Union[str, ObjectId, dict], inc_dict: dict, session=None) -> Optional[Dict[str, Any]]:
    doc = get_db()[collection_name].find_one_and_update(
        _query(id_or_filter),
        {"$inc": inc_dict, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return _out(doc)


def compare_and_set(collection_name: str, filter_dict: dict, update: dict, session=None) -> Optional[Dict[str, Any]]:
    """Apply a raw update only if the document still matches filter_dict.

    Returns the updated document, or None when the precondition no longer
    holds (someone else moved the document first).
    """
    update = dict(update)
    update["$set"] = {**update.get("$set", {}), "updated_at": utcnow()}
    doc = get_db()[collection_name].find_one_and_update(
        filter_dict, update, return_document=ReturnDocument.AFTER, session=session
    )
    return _out(doc)


def upsert_increment(collection_name: str, filter_dict: dict, inc_dict: dict, on_insert: dict = None, session=None) -> None:
    now = utcnow()
    get_db()[collection_name].update_one(
        filter_dict,
        {
            "$inc": inc_dict,
            "$set": {"updated_at": now},
            "$setOnInsert": {**(on_insert or {}), "created_at": now},
        },
        upsert=True,
        session=session,
    )


def update_many(collection_name: str, filter_dict: dict, update_dict: dict, session=None) -> int:
    result = get_db()[collection_name].update_many(
        filter_dict, {"$set": {**update_dict, "updated_at": utcnow()}}, session=session
    )
    return result.modified_count


def increment_many(collection_name: str, filter_dict: dict, inc_dict: dict, session=None) -> int:
    result = get_db()[collection_name].update_many(
        filter_dict, {"$inc": inc_dict, "$set": {"updated_at": utcnow()}}, session=session
    )
    return result.modified_count


def ensure_indexes() -> None:
    database = get_db()
    database["actor"].create_index([("wallet_address", ASCENDING)], unique=True, sparse=True)
    database["donation"].create_index([("status", ASCENDING), ("dispute_deadline", ASCENDING)])
    database["donation"].create_index([("claimant_id", ASCENDING)])
    database["dailypoints"].create_index([("actor_id", ASCENDING), ("day", ASCENDING)], unique=True)
    database["dailypoints"].create_index([("synced", ASCENDING), ("day", ASCENDING)])
    database["karmatransaction"].create_index([("actor_id", ASCENDING), ("created_at", DESCENDING)])
    database["contribution"].create_index([("payment_id", ASCENDING)], unique=True)
