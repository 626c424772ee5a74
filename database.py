"""
MongoDB access helpers.

The client is built from settings on first use; nothing in the ledger reaches
for it directly, the stores receive their collections at construction.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.decimal128 import Decimal128
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import Settings
from errors import ValidationError

AUTHORS = "authors"
BOOKS = "books"
MEMBERS = "members"
BORROWING = "borrowing"


def connect(settings: Settings) -> MongoClient:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not set")
    return MongoClient(settings.database_url, tz_aware=True)


def get_database(client: MongoClient, settings: Settings) -> Database:
    return client[settings.database_name]


def to_object_id(id_str: Union[str, ObjectId], label: str = "ID") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise ValidationError(f"Invalid {label} format", reason="invalid_id")
    try:
        return ObjectId(id_str)
    except InvalidId:
        raise ValidationError(f"Invalid {label} format", reason="invalid_id")


def to_bson(data: Dict[str, Any]) -> Dict[str, Any]:
    """Replace values the BSON encoder does not know (Decimal)."""
    out = {}
    for k, v in data.items():
        if isinstance(v, Decimal):
            v = Decimal128(str(v))
        elif isinstance(v, dict):
            v = to_bson(v)
        out[k] = v
    return out


def from_bson(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stored document -> plain dict with a string ``id``."""
    if not doc:
        return doc
    d = {}
    for k, v in doc.items():
        if k == "_id":
            d["id"] = str(v)
        elif isinstance(v, ObjectId):
            d[k] = str(v)
        elif isinstance(v, Decimal128):
            d[k] = v.to_decimal()
        else:
            d[k] = v
    return d


def serialize(doc: Optional[Union[Dict[str, Any], BaseModel]]) -> Optional[Dict[str, Any]]:
    """JSON friendly rendering of a stored document or a schema model."""
    if doc is None:
        return None
    if isinstance(doc, BaseModel):
        d = doc.model_dump(by_alias=True)
    else:
        d = from_bson(doc)
    for k, v in list(d.items()):
        if isinstance(v, (datetime, date)):
            d[k] = v.isoformat()
        elif isinstance(v, Decimal):
            d[k] = str(v)
        elif isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    if isinstance(data, BaseModel):
        data = data.to_document() if hasattr(data, "to_document") else data.model_dump()
    result = db[collection_name].insert_one(to_bson(dict(data)), session=session)
    return str(result.inserted_id)
