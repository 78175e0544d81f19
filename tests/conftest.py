from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from database import Base, PolicyBase, create_store  # noqa: E402
from tip_pool import add_pool_group, create_role_mapping  # noqa: E402


@pytest.fixture()
def memory_db(monkeypatch, tmp_path):
    """Single in-memory engine holding both tip pool and policy tables."""
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    # Point the database module at the in-memory engine so helper functions use it.
    monkeypatch.setattr(db, "tip_engine", engine)
    monkeypatch.setattr(db, "policy_engine", engine)
    monkeypatch.setattr(db, "SessionLocal", Session)
    monkeypatch.setattr(db, "PolicySessionLocal", Session)
    Base.metadata.create_all(engine)
    PolicyBase.metadata.create_all(engine)

    # Keep exports in a temp folder to avoid polluting the repo.
    monkeypatch.setattr("data_exchange.EXPORT_DIR", tmp_path, raising=False)

    session = Session()
    try:
        yield {"session": session, "engine": engine, "factory": Session, "tmp": tmp_path}
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def store(memory_db):
    """Store open 10:00-23:00 with FRONT/BACK/FLOATER mapped and pooled."""
    session = memory_db["session"]
    shop = create_store(session, "Downtown", "DT", before_minutes=600, after_minutes=1380)
    create_role_mapping(
        session,
        shop.id,
        "FRONT",
        actual_role_name="Server",
        trainee_role_name="Server Trainee",
        trainee_percentage=Decimal("50"),
    )
    create_role_mapping(session, shop.id, "BACK", actual_role_name="Cook")
    create_role_mapping(session, shop.id, "FLOATER", actual_role_name="Busser")
    for group in ("FRONT", "BACK", "FLOATER"):
        add_pool_group(session, shop.id, group)
    return shop

