"""PostgreSQL connection helpers shared by the repositories."""

import uuid
from typing import Any, Dict

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb


def connect(db_url: str) -> psycopg.Connection:
    """Open a connection that yields rows as dicts."""
    return psycopg.connect(db_url, row_factory=dict_row)


def new_id() -> str:
    return str(uuid.uuid4())


def as_json(value: Dict[str, Any]) -> Jsonb:
    return Jsonb(value)
