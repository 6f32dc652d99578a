from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import edition_ledger.persistence.pg as pg
from edition_ledger.core.config import get_settings
from edition_ledger.core.timeutil import now_utc
from edition_ledger.ingest.records import RawOrderRecord
from edition_ledger.persistence.models import Base, ProductModel

BASE_TIME = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.sync_backoff_seconds = 0.0
    settings.audit_confirm_runs = 2

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(configure_test_engine):
    with pg.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def client(configure_test_engine):
    from edition_ledger.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def make_record():
    def _make(
        source_id: str,
        *,
        source_kind: str = "commerce",
        display_number: str | None = None,
        hours: float = 0,
        email: str | None = None,
        items: list[tuple[str, str]] | None = None,
        **fields,
    ) -> RawOrderRecord:
        payload = {
            "source_kind": source_kind,
            "source_id": source_id,
            "display_number": display_number,
            "financial_state": "paid",
            "purchased_at": BASE_TIME + timedelta(hours=hours),
            "contact": {"email": email},
            "line_items": [
                {
                    "line_item_id": line_item_id,
                    "product_id": product_id,
                    "unit_price": 12000,
                    "created_at": BASE_TIME + timedelta(hours=hours),
                }
                for line_item_id, product_id in (items or [])
            ],
        }
        payload.update(fields)
        return RawOrderRecord.model_validate(payload)

    return _make


@pytest.fixture()
def make_product():
    def _make(product_id: str, edition_total: int | None, title: str | None = None) -> None:
        with pg.session_scope() as s:
            product = s.get(ProductModel, product_id) or ProductModel(product_id=product_id)
            product.title = title
            product.edition_total = edition_total
            product.updated_at = now_utc()
            s.add(product)

    return _make
