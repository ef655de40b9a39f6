import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Tests run against the in-process store unless told otherwise
os.environ.setdefault("STORE_BACKEND", "memory")


@pytest.fixture
def store():
    from app.storage.memory import MemoryStore
    return MemoryStore()


@pytest.fixture
def ledger(store):
    from app.services.ledger import Ledger
    return Ledger(store)


@pytest_asyncio.fixture
async def client(ledger) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_ledger
    from app.main import app
    app.dependency_overrides[get_ledger] = lambda: ledger
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
