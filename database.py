"""
Database helpers

MongoDB access for the checkout service. `db` stays None when the connection
environment is not configured; routes report that through /test.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, Union

from pydantic import BaseModel
from pymongo import MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Topologies on which the server accepts multi-document transactions
TRANSACTIONAL_TOPOLOGIES = {"ReplicaSetWithPrimary", "Sharded", "LoadBalanced"}

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    # naive UTC, the same shape pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


def collection(name: str):
    if db is None:
        raise RuntimeError("Database not initialized. Set DATABASE_URL and DATABASE_NAME.")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def transactions_supported() -> bool:
    """Ask the driver whether the connected deployment can run transactions.

    Standalone servers reject sessions with transactions; replica sets,
    sharded clusters and load-balanced deployments accept them. The topology
    is only known once the client has talked to the server, so call this
    after at least one round trip.
    """
    if db is None:
        return False
    topology = getattr(db.client, "topology_description", None)
    if topology is None:
        return False
    return topology.topology_type_name in TRANSACTIONAL_TOPOLOGIES
