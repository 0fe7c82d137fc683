import uuid
from datetime import datetime
from typing import Optional

from fastapi import Header

from . import db
from .clock import utcnow


def get_correlation_id(x_correlation_id: Optional[str] = Header(None)):
    return x_correlation_id or str(uuid.uuid4())


def get_db():
    s = db.SessionLocal()
    try:
        yield s
    finally:
        s.close()


def get_now() -> datetime:
    return utcnow()