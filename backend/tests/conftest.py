"""Pytest fixtures for the wholesale matcher.

Provides reusable test fixtures for:
- In-memory SQLite database session (schema recreated per test)
- A cigarette catalog template with a few products
- A FastAPI test client bound to the test database

Usage:
    def test_match(client, catalog):
        response = client.post("/api/v1/match", json={...})
        assert response.status_code == 200
"""

import os
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Generator
from uuid import uuid4

# Set environment variables BEFORE any imports to ensure they take effect
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, Product, ProductTemplate

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@dataclass
class Catalog:
    template: ProductTemplate
    zhonghua: Product
    yuxi: Product
    huanghelou: Product

    @property
    def template_id(self):
        return self.template.id


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Fresh schema and session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def add_product(db: Session, template: ProductTemplate, name: str, brand: str, price=None) -> Product:
    product = Product(
        id=uuid4(),
        template_id=template.id,
        name=name,
        brand=brand,
        keywords=[],
        company_price=Decimal(str(price)) if price is not None else None,
        active=True,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def template(db_session: Session) -> ProductTemplate:
    template = ProductTemplate(id=uuid4(), name="卷烟目录", active=True)
    db_session.add(template)
    db_session.commit()
    db_session.refresh(template)
    return template


@pytest.fixture
def catalog(db_session: Session, template: ProductTemplate) -> Catalog:
    """Template with 中华(软盒), 玉溪(软) and 黄鹤楼天下名烟典藏."""
    return Catalog(
        template=template,
        zhonghua=add_product(db_session, template, "中华(软盒)", "中华", 45),
        yuxi=add_product(db_session, template, "玉溪(软)", "玉溪"),
        huanghelou=add_product(db_session, template, "黄鹤楼天下名烟典藏", "黄鹤楼"),
    )


@pytest.fixture
def enqueued(monkeypatch):
    """Run enqueued matching tasks inline against the test database.

    Returns the list of task ids handed to the queue.
    """
    from matching_tasks import router as matching_tasks_router
    from matching_tasks.runner import TaskRunner

    calls = []

    def run_inline(task_id):
        calls.append(task_id)
        session = TestingSessionLocal()
        try:
            TaskRunner(session).run(task_id)
        finally:
            session.close()

    monkeypatch.setattr(matching_tasks_router, "enqueue_matching_task", run_inline)
    return calls


@pytest.fixture
def client(db_session: Session, enqueued) -> Generator[TestClient, None, None]:
    """Test client whose requests use the test database."""
    from database import get_db
    from main import app

    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
