"""Shared fixtures: in-process fakes for the image fetcher and Gemini client."""

import io
import time
from types import SimpleNamespace

import pytest
from PIL import Image

from app import create_app
from config import Settings
from errors import FetchError
from generation import ImageAsset, MockupGenerator


def make_image_bytes(width=100, height=100, color=(128, 64, 32), fmt="PNG", mode="RGB"):
    """Return raw bytes of a flat single-colour image."""
    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def inline_part(data, mime_type="image/png"):
    return SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime_type), text=None)


def text_part(text):
    return SimpleNamespace(inline_data=None, text=text)


def model_response(*parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


class FakeModels:
    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls = []

    def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeClient:
    def __init__(self, response=None, error=None, delay=0.0):
        self.models = FakeModels(response=response, error=error, delay=delay)


class FakeFetcher:
    """Serves ``ImageAsset`` objects (or raises) keyed by URL."""

    def __init__(self, assets=None):
        self.assets = dict(assets or {})
        self.requested = []

    def fetch(self, url, label="image"):
        self.requested.append(url)
        item = self.assets.get(url)
        if item is None:
            raise FetchError(f"Failed to fetch {label}: HTTP 404 Not Found")
        if isinstance(item, Exception):
            raise item
        return item

MUG_URL = "https://x/mug.png"
LOGO_URL = "https://x/logo.png"
REF_URL = "https://x/reference.jpg"


@pytest.fixture
def generated_png():
    return make_image_bytes(width=1600, height=1200, color=(10, 120, 200))


@pytest.fixture
def fake_client(generated_png):
    return FakeClient(response=model_response(text_part("Here is your mockup"), inline_part(generated_png)))


@pytest.fixture
def fetcher():
    return FakeFetcher({
        MUG_URL: ImageAsset(make_image_bytes(color=(240, 240, 240)), "image/png"),
        LOGO_URL: ImageAsset(make_image_bytes(color=(200, 20, 20), fmt="JPEG"), "image/jpeg"),
        REF_URL: ImageAsset(make_image_bytes(fmt="JPEG"), "image/jpeg"),
    })


@pytest.fixture
def settings(tmp_path):
    return Settings(upload_dir=str(tmp_path / "uploads"))


def _build_app(settings, fake_client, fetcher):
    generator = MockupGenerator(fake_client, timeout=5, prompt_position=settings.prompt_position)
    app = create_app(settings, generator=generator, fetcher=fetcher, start_sweeper=False)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def app(settings, fake_client, fetcher):
    app = _build_app(settings, fake_client, fetcher)
    yield app
    app.extensions["mockup"].close()


@pytest.fixture
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture
def persist_app(tmp_path, fake_client, fetcher):
    settings = Settings(output_mode="persist", upload_dir=str(tmp_path / "uploads"),
                        public_host="mockups.example.com")
    app = _build_app(settings, fake_client, fetcher)
    yield app
    app.extensions["mockup"].close()


@pytest.fixture
def persist_client(persist_app):
    with persist_app.test_client() as c:
        yield c
