"""Shared test fixtures."""

from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from spend_classifier.config import settings
from spend_classifier.models import Base, PurchasedItem, Transaction
from spend_classifier.repositories import SQLAlchemyRepository
from spend_classifier.services.category_descriptions import DEFAULT_CATEGORIES, default_attributes
from spend_classifier.services.llm_service import OllamaClient


@pytest.fixture
async def engine():
    """In-memory SQLite engine shared by every connection of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def repository(db):
    return SQLAlchemyRepository(db)


@pytest.fixture
async def categories(repository) -> dict[str, int]:
    """Default categories (no rules), as name -> id."""
    ids = {}
    for name in DEFAULT_CATEGORIES:
        category = await repository.create_category(name, None, default_attributes(name))
        ids[name] = category.id
    return ids


@pytest.fixture
def make_transaction(db):
    async def _make(txn_id: str, description: str = "", merchant_name: str | None = None, **fields) -> Transaction:
        txn = Transaction(
            id=txn_id,
            description=description,
            merchant_name=merchant_name,
            amount=fields.pop("amount", Decimal("-10.00")),
            **fields,
        )
        db.add(txn)
        await db.flush()
        return txn

    return _make


@pytest.fixture
def make_item(db):
    async def _make(title: str, **fields) -> PurchasedItem:
        item = PurchasedItem(title=title, price=fields.pop("price", Decimal("9.99")), **fields)
        db.add(item)
        await db.flush()
        return item

    return _make


@pytest.fixture
def ollama():
    """Build an OllamaClient whose HTTP traffic is served in-process.

    ``answer`` is the text returned by /api/generate. ``available=False``
    makes every request fail to connect. ``tags_body`` and ``generate_body``
    replace the JSON payloads outright.
    """

    def _make(
        answer: str = "",
        available: bool = True,
        generate_status: int = 200,
        tags_body=None,
        generate_body=None,
    ) -> OllamaClient:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if not available:
                raise httpx.ConnectError("connection refused", request=request)
            if request.url.path == "/api/tags":
                if tags_body is not None:
                    return httpx.Response(200, json=tags_body)
                return httpx.Response(200, json={"models": [{"name": settings.llm_model}]})
            if request.url.path == "/api/generate":
                if generate_status != 200:
                    return httpx.Response(generate_status, text="model crashed")
                if generate_body is not None:
                    return httpx.Response(200, json=generate_body)
                return httpx.Response(200, json={"model": settings.llm_model, "response": answer, "done": True})
            return httpx.Response(404)

        client = OllamaClient(
            base_url="http://ollama.test",
            model=settings.llm_model,
            transport=httpx.MockTransport(handler),
        )
        client.requests = requests
        return client

    return _make
