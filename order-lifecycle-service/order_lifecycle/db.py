from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from . import config
from .models import Base


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # sessions are handed to FastAPI's threadpool
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args)


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
