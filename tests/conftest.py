import asyncio
import io
import random
from contextlib import asynccontextmanager

import jwt
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from avatar_ingest.core.config import get_settings
from avatar_ingest.core.db import create_engine, create_schema, lifespan
from avatar_ingest.core.jobs import get_job_backend
from avatar_ingest.core.storage import get_storage
from avatar_ingest.main import create_app
from avatar_ingest.services.catalog import Catalog
from avatar_ingest.services.ingest_service import IngestService

JWT_SECRET = "test-secret"
JWT_ISSUER = "avatar-test"
JWT_AUDIENCE = "avatar-ingest"
BASE_URL = "https://images.test/"


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default environment bootstrap fixture for tests that manage their own .env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        get_job_backend.cache_clear()
        yield
        get_job_backend.cache_clear()
        get_settings.cache_clear()
        return
    db_path = tmp_path / "avatars_test.db"

    monkeypatch.setenv("AVATAR_ENV", "test")
    monkeypatch.setenv("AVATAR_LOG_LEVEL", "debug")
    monkeypatch.setenv("AVATAR_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("AVATAR_STORAGE_BACKEND", "local")
    monkeypatch.setenv("AVATAR_LOCAL_STORAGE_BASE_PATH", str(tmp_path / "objects"))
    monkeypatch.setenv("AVATAR_BASE_URL", BASE_URL)
    monkeypatch.setenv("AVATAR_STORAGE_RETRY_INITIAL_DELAY_S", "0")
    monkeypatch.setenv("AVATAR_JOB_BACKEND", "inline")
    monkeypatch.setenv("AVATAR_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("AVATAR_JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("AVATAR_JWT_ISSUER", JWT_ISSUER)
    monkeypatch.setenv("AVATAR_JWT_AUDIENCE", JWT_AUDIENCE)

    get_settings.cache_clear()
    get_job_backend.cache_clear()
    settings = get_settings()
    engine = create_engine(settings)

    async def _setup() -> None:
        await create_schema(engine)
        await engine.dispose()

    asyncio.run(_setup())

    yield settings

    get_job_backend.cache_clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(configure_environment):
    app = create_app()
    with TestClient(app) as client:
        yield client


@pytest.fixture()
def open_service(configure_environment):
    """Async context manager yielding an IngestService bound to the test database.

    Keyword arguments override the service's collaborators (storage, transcoder,
    fetcher, limits, ...).
    """

    @asynccontextmanager
    async def _open(**overrides):
        settings = get_settings()
        storage = overrides.pop("storage", None) or get_storage(settings)
        async with lifespan(settings) as state:
            catalog = Catalog(state["session_factory"], retry_delay_s=0)
            service = IngestService(settings, storage, catalog, **overrides)
            try:
                yield service
            finally:
                await service.aclose()

    return _open


def build_token(subject: str | None = None, *, scopes: list[str] | None = None) -> str:
    payload: dict[str, object] = {"iss": JWT_ISSUER, "aud": JWT_AUDIENCE}
    if scopes:
        payload["scopes"] = scopes
    if subject:
        payload["sub"] = subject
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    token = build_token("466378653216014359")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    token = build_token("1", scopes=["admin"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def make_image():
    """Encode a still image in memory. ``noise`` yields content that barely compresses."""

    def _make(size=(64, 64), fmt="PNG", *, noise=False, color=(220, 40, 40), seed=0):
        if noise:
            pixels = random.Random(seed).randbytes(size[0] * size[1] * 3)
            image = Image.frombytes("RGB", size, pixels)
        else:
            image = Image.new("RGB", size, color)
        buffer = io.BytesIO()
        image.save(buffer, format=fmt)
        return buffer.getvalue()

    return _make


@pytest.fixture()
def make_animation():
    """Encode a multi-frame image, one distinct frame per entry in ``durations``."""

    def _make(size=(96, 96), durations=(50, 120, 200), fmt="GIF", *, noise=False, seed=0):
        rng = random.Random(seed)
        frames = []
        for index in range(len(durations)):
            if noise:
                frames.append(Image.frombytes("RGB", size, rng.randbytes(size[0] * size[1] * 3)))
            else:
                color = ((index * 90) % 256, (255 - index * 70) % 256, (index * 40 + 30) % 256)
                frames.append(Image.new("RGB", size, color))
        buffer = io.BytesIO()
        frames[0].save(
            buffer,
            format=fmt,
            save_all=True,
            append_images=frames[1:],
            duration=list(durations),
            loop=0,
        )
        return buffer.getvalue()

    return _make
