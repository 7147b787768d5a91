"""An HTTP client over the app with every pipeline component pointed at the
test store, the fake encoder and a per-test metadata database."""

from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from video_delivery.core.database import get_db
from video_delivery.main import app
from video_delivery.modules.files.dependencies import (
    get_coordinator,
    get_http_client,
    get_notifier,
    get_resolver,
    get_store,
)
from video_delivery.modules.files.repository import SQLFileMetadataStore, VideoFileRepository
from video_delivery.modules.transcoding.delivery import DeliveryResolver
from video_delivery.modules.transcoding.service import TranscodingCoordinator


@dataclass
class ApiHarness:
    client: httpx.AsyncClient
    coordinator: TranscodingCoordinator
    session_maker: async_sessionmaker
    upstream_requests: list[httpx.Request] = field(default_factory=list)
    upstream_handler: Optional[Callable[[httpx.Request], httpx.Response]] = None

    async def register(self, object_key: str, content_type: str = "video/mp4", size: int = 0) -> str:
        """Insert a file row directly, without starting a job. Returns its ID."""
        async with self.session_maker() as session:
            video_file = await VideoFileRepository(session).create(
                object_key=object_key, content_type=content_type, size=size
            )
            await session.commit()
            return video_file.id


@pytest_asyncio.fixture
async def api(session_maker, store, catalog, notifier, make_coordinator):
    coordinator = make_coordinator(state_store=SQLFileMetadataStore(session_maker))
    resolver = DeliveryResolver(store, catalog)

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    harness = ApiHarness(client=None, coordinator=coordinator, session_maker=session_maker)

    def upstream(request: httpx.Request) -> httpx.Response:
        harness.upstream_requests.append(request)
        if harness.upstream_handler is None:
            return httpx.Response(404)
        return harness.upstream_handler(request)

    upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_resolver] = lambda: resolver
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_http_client] = lambda: upstream_client

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        harness.client = client
        yield harness

    await coordinator.wait_all()
    await upstream_client.aclose()
    app.dependency_overrides.clear()
