"""Shared pytest fixtures for Headshot Studio tests."""

import os
import json
import shutil
import asyncio
import tempfile
from types import SimpleNamespace

import pytest

# Point the app at a throwaway SQLite file before any app module is imported.
_TEST_DIR = tempfile.mkdtemp(prefix="headshot-tests-")
os.environ["DATABASE_URL"] = ""
os.environ["TEMP_DIR"] = _TEST_DIR
os.environ["SQLITE_PATH"] = os.path.join(_TEST_DIR, "headshots-test.db")
os.environ["ENVIRONMENT"] = "development"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SESSION_SECRET"] = "test-session-secret"
for _key in (
    "OPENAI_API_KEY", "BFL_API_KEY", "DODO_PAYMENTS_API_KEY", "S3_BUCKET",
    "OAUTH_GOOGLE_CLIENT_ID", "OAUTH_GOOGLE_CLIENT_SECRET",
):
    os.environ.pop(_key, None)

import headshot_store as store  # noqa: E402
from blob_storage import BlobStorageError  # noqa: E402
from db_store import init_db, clear_all_records, create_user  # noqa: E402
from generation import PipelineServices  # noqa: E402

init_db()

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_TEST_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def clean_db():
    """Every test starts from empty tables."""
    clear_all_records()
    yield


@pytest.fixture
def user() -> str:
    user_id, _ = create_user("alice@example.com", name="Alice")
    return user_id


@pytest.fixture
def other_user() -> str:
    user_id, _ = create_user("bob@example.com", name="Bob")
    return user_id


@pytest.fixture
def uploaded_image(user) -> store.Image:
    return store.create_image(
        user, store.IMAGE_TYPE_UPLOADED, "https://blobs.test/uploaded/a.jpg",
        storage_path="uploaded/a.jpg", content_type="image/jpeg",
    )


class FakeVisionService:
    """Stands in for the OpenAI/BFL client.

    ``failures`` maps a pipeline step name to an error to raise there;
    ``delays`` maps a step name to seconds to sleep before answering.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.delays = {}
        self.hooks = {}

    async def _enter(self, step: str):
        self.calls.append(step)
        if step in self.hooks:
            self.hooks[step]()
        if self.delays.get(step):
            await asyncio.sleep(self.delays[step])
        if step in self.failures:
            raise self.failures[step]

    async def describe(self, image_urls):
        await self._enter("analysis")
        self.described_urls = list(image_urls)
        return "Person with short dark hair and glasses"

    async def compose_prompt(self, description, preferences):
        await self._enter("prompt")
        self.preferences = preferences
        return f"{description}, {preferences.get('background', 'studio')} background"

    async def generate_image(self, prompt):
        await self._enter("generation")
        return "https://bfl.test/sample.png"

    async def download(self, url):
        return PNG_BYTES


class FakeBlobUploader:
    """In-memory blob store."""

    def __init__(self):
        self.objects = {}
        self.fail = False

    def put(self, path, data, content_type):
        if self.fail:
            raise BlobStorageError("storage unavailable")
        self.objects[path] = (data, content_type)
        return f"https://blobs.test/{path}"

    def delete(self, path):
        self.objects.pop(path, None)


class FakeDodoClient:
    """Mimics the checkout_sessions/webhooks surface of the Dodo Payments client."""

    VALID_SIGNATURE = "v1,valid"

    def __init__(self):
        self.checkouts = []
        self.unwrapped = []
        self.fail_checkout = False
        self.checkout_sessions = SimpleNamespace(create=self._create_checkout)
        self.webhooks = SimpleNamespace(unwrap=self._unwrap)

    def _create_checkout(self, **kwargs):
        if self.fail_checkout:
            raise RuntimeError("provider unavailable")
        self.checkouts.append(kwargs)
        session_id = f"cks_{len(self.checkouts)}"
        return SimpleNamespace(
            session_id=session_id,
            checkout_url=f"https://checkout.test/{session_id}",
        )

    def _unwrap(self, raw_body, headers):
        if headers.get("webhook-signature") != self.VALID_SIGNATURE:
            raise ValueError("signature mismatch")
        payload = json.loads(raw_body)
        self.unwrapped.append(payload)
        return payload


@pytest.fixture
def vision() -> FakeVisionService:
    return FakeVisionService()


@pytest.fixture
def blob() -> FakeBlobUploader:
    return FakeBlobUploader()


@pytest.fixture
def dodo() -> FakeDodoClient:
    return FakeDodoClient()


@pytest.fixture
def services(vision, blob) -> PipelineServices:
    return PipelineServices(vision=vision, blob=blob)


@pytest.fixture
def app_module(monkeypatch, user, vision, blob, dodo):
    """The FastAPI app with fake collaborators and ``user`` signed in."""
    import main

    monkeypatch.setattr(main, "vision_service", vision)
    monkeypatch.setattr(main, "blob_uploader", blob)
    monkeypatch.setattr(main, "dodo_client", dodo)
    monkeypatch.setattr(main, "DODO_HEADSHOT_PRODUCT_ID", "prod_headshot")
    monkeypatch.setattr(main, "REQUIRE_PAYMENT_BEFORE_GENERATION", False)
    monkeypatch.setattr(main, "DEDUPE_GENERATION_REQUESTS", False)
    main.app.dependency_overrides[main.get_current_user_id] = lambda: user
    try:
        yield main
    finally:
        main.app.dependency_overrides.clear()


@pytest.fixture
def test_client(app_module):
    from fastapi.testclient import TestClient

    return TestClient(app_module.app)
