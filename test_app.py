"""
Tests for the Mug Mockup Flask API.
"""

import base64
import io
import json
from types import SimpleNamespace

import pytest
from PIL import Image

from app import create_app, parse_generate_body
from config import Settings
from conftest import LOGO_URL, MUG_URL, REF_URL, FakeClient, FakeFetcher
from errors import ConfigError, ValidationError
from generation import ImageAsset, MockupGenerator


def _post(client, **body):
    return client.post("/api/generate-mockup", json=body)


def _decode_data_uri(uri):
    header, encoded = uri.split(",", 1)
    return header, Image.open(io.BytesIO(base64.b64decode(encoded)))


# ── Health endpoint ────────────────────────────────────────────────────────────

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = json.loads(resp.data)
    assert data["status"] == "ok"
    assert "running" in data["message"]
    assert data["timestamp"]


def test_index_only_in_persist_mode(client, persist_client):
    assert client.get("/").status_code == 404
    resp = persist_client.get("/")
    assert resp.status_code == 200
    assert "generate" in resp.get_json()["endpoints"]


# ── validation ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("body", [
    {},
    {"mockupUrl": MUG_URL},
    {"designUrl": LOGO_URL},
    {"mockupUrl": "", "designUrl": LOGO_URL},
])
def test_missing_urls_return_400_without_model_call(client, fake_client, fetcher, body):
    resp = _post(client, **body)
    assert resp.status_code == 400
    data = resp.get_json()
    assert data["success"] is False
    assert data["error"].startswith("Missing required fields")
    assert fake_client.models.calls == []
    assert fetcher.requested == []


@pytest.mark.parametrize("extra", [
    {"outputFormat": "gif"},
    {"quality": "high"},
    {"maxWidth": 0},
    {"maxWidth": "wide"},
])
def test_malformed_options_return_400(client, fake_client, extra):
    resp = _post(client, mockupUrl=MUG_URL, designUrl=LOGO_URL, **extra)
    assert resp.status_code == 400
    assert fake_client.models.calls == []


def test_non_http_url_rejected(client):
    resp = _post(client, mockupUrl="file:///etc/passwd", designUrl=LOGO_URL)
    assert resp.status_code == 400
    assert "mockupUrl" in resp.get_json()["error"]


def test_parse_defaults_and_clamping():
    settings = Settings(default_quality=80, default_max_width=1500)
    params = parse_generate_body({"mockupUrl": MUG_URL, "designUrl": LOGO_URL}, settings)
    assert params["output"].output_format == "jpeg"
    assert params["output"].quality == 80
    assert params["output"].max_dimension == 1500
    assert params["design_size"] == "medium"
    assert params["reference_url"] is None

    params = parse_generate_body({"mockupUrl": MUG_URL, "designUrl": LOGO_URL, "quality": 250,
                                  "outputFormat": "JPG", "designSize": "gigantic"}, settings)
    assert params["output"].quality == 100
    assert params["output"].output_format == "jpeg"
    assert params["design_size"] == "medium"


def test_parse_rejects_missing_fields():
    with pytest.raises(ValidationError):
        parse_generate_body({"designUrl": LOGO_URL}, Settings())


# ── generate: inline mode ─────────────────────────────────────────────────────

def test_generate_returns_resized_jpeg(client):
    resp = _post(client, mockupUrl=MUG_URL, designUrl=LOGO_URL, outputFormat="jpeg", quality=80, maxWidth=1000)
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    assert data["mimeType"] == "image/jpeg"
    header, img = _decode_data_uri(data["image"])
    assert header == "data:image/jpeg;base64"
    assert img.format == "JPEG"
    assert max(img.size) <= 1000
    assert img.size == (1000, 750)
    assert data["quality"] == 80
    assert data["reduction"].endswith("%")
    assert data["sizeSpec"]["coverage"] == "50-60%"
    assert "X-Step-Log" in resp.headers


def test_generate_png_output(client):
    resp = _post(client, mockupUrl=MUG_URL, designUrl=LOGO_URL, outputFormat="png")
    data = resp.get_json()
    assert resp.status_code == 200
    header, img = _decode_data_uri(data["image"])
    assert header == "data:image/png;base64"
    assert img.size == (1600, 1200)


def test_images_sent_to_model_are_png(client, fake_client):
    _post(client, mockupUrl=MUG_URL, designUrl=LOGO_URL, referenceUrl=REF_URL, designSize="small")
    call = fake_client.models.calls[0]
    parts = call["contents"][0].parts
    assert parts[0].text and "three images" in parts[0].text
    images = [p.inline_data for p in parts[1:]]
    assert len(images) == 3
    for blob in images:
        assert blob.mime_type == "image/png"
        assert Image.open(io.BytesIO(blob.data)).format == "PNG"


def test_unreachable_reference_is_skipped(client, fake_client):
    resp = _post(client, mockupUrl=MUG_URL, designUrl=LOGO_URL, referenceUrl="https://x/missing.png")
    assert resp.status_code == 200
    assert resp.get_json()["referenceUsed"] is False
    parts = fake_client.models.calls[0]["contents"][0].parts
    assert len(parts) == 3
    assert "two images" in parts[0].text


def test_failed_fetch_returns_500(client, fake_client):
    resp = _post(client, mockupUrl="https://x/nowhere.png", designUrl=LOGO_URL)
    assert resp.status_code == 500
    data = resp.get_json()
    assert data == {"success": False, "error": "Failed to generate mockup", "message": data["message"]}
    assert "mockup" in data["message"]
    assert fake_client.models.calls == []


def test_undecodable_design_returns_500(settings, fake_client):
    fetcher = FakeFetcher({
        MUG_URL: ImageAsset(b"\x89PNG-but-not-really", "image/png"),
        LOGO_URL: ImageAsset(b"<html>error</html>", "image/png"),
    })
    app = create_app(settings, generator=MockupGenerator(fake_client), fetcher=fetcher)
    resp = app.test_client().post("/api/generate-mockup", json={"mockupUrl": MUG_URL, "designUrl": LOGO_URL})
    app.extensions["mockup"].close()
    assert resp.status_code == 500
    assert "decode" in resp.get_json()["message"]
    assert fake_client.models.calls == []


@pytest.mark.parametrize("response,message", [
    (SimpleNamespace(candidates=[]), "No response from AI model"),
    (SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[]))]), "No image in response"),
])
def test_model_without_image_returns_500(settings, fetcher, response, message):
    app = create_app(settings, generator=MockupGenerator(FakeClient(response=response)), fetcher=fetcher)
    resp = app.test_client().post("/api/generate-mockup", json={"mockupUrl": MUG_URL, "designUrl": LOGO_URL})
    app.extensions["mockup"].close()
    assert resp.status_code == 500
    assert resp.get_json()["message"] == message


def test_model_timeout_returns_500(settings, fetcher):
    slow = FakeClient(response=SimpleNamespace(candidates=[]), delay=2.0)
    app = create_app(settings, generator=MockupGenerator(slow, timeout=0.05), fetcher=fetcher)
    resp = app.test_client().post("/api/generate-mockup", json={"mockupUrl": MUG_URL, "designUrl": LOGO_URL})
    app.extensions["mockup"].close()
    assert resp.status_code == 500
    data = resp.get_json()
    assert data["success"] is False
    assert data["error"] == "Failed to generate mockup"
    assert "did not respond within 0.05 seconds" in data["message"]
    assert "exception:fail" in resp.headers["X-Step-Log"]


def test_form_encoded_body_accepted(client):
    resp = client.post("/api/generate-mockup", data={"mockupUrl": MUG_URL, "designUrl": LOGO_URL, "maxWidth": "400"})
    assert resp.status_code == 200
    _, img = _decode_data_uri(resp.get_json()["image"])
    assert max(img.size) == 400


def test_keying_applied_to_design_only(tmp_path, fake_client, fetcher):
    settings = Settings(upload_dir=str(tmp_path), key_white_background=True, key_threshold=100)
    app = create_app(settings, generator=MockupGenerator(fake_client), fetcher=fetcher)
    app.test_client().post("/api/generate-mockup", json={"mockupUrl": MUG_URL, "designUrl": LOGO_URL})
    app.extensions["mockup"].close()

    parts = fake_client.models.calls[0]["contents"][0].parts
    mug = Image.open(io.BytesIO(parts[1].inline_data.data))
    design = Image.open(io.BytesIO(parts[2].inline_data.data))
    assert mug.mode == "RGB"
    assert design.mode == "RGBA"


# ── persist mode ──────────────────────────────────────────────────────────────

def test_persist_mode_saves_file_and_serves_it(persist_client, persist_app):
    resp = _post(persist_client, mockupUrl=MUG_URL, designUrl=LOGO_URL)
    assert resp.status_code == 200
    data = resp.get_json()
    assert "image" not in data
    assert data["url"] == f"https://mockups.example.com/uploads/{data['filename']}"

    served = persist_client.get(f"/uploads/{data['filename']}")
    assert served.status_code == 200
    assert Image.open(io.BytesIO(served.data)).format == "JPEG"

    download = persist_client.get(f"/download/{data['filename']}")
    assert download.status_code == 200
    assert "attachment" in download.headers["Content-Disposition"]


def test_download_after_sweep_is_404(persist_client, persist_app):
    data = _post(persist_client, mockupUrl=MUG_URL, designUrl=LOGO_URL).get_json()
    sweeper = persist_app.extensions["mockup"].sweeper
    sweeper.max_age = -60
    assert sweeper.sweep() == 1

    resp = persist_client.get(f"/download/{data['filename']}")
    assert resp.status_code == 404
    assert resp.get_json() == {"success": False, "error": "File not found"}


def test_download_rejects_path_traversal(persist_client):
    resp = persist_client.get("/download/../../etc/passwd")
    assert resp.status_code == 404


def test_download_routes_absent_in_inline_mode(client):
    assert client.get("/download/anything.jpg").status_code == 404


# ── startup ───────────────────────────────────────────────────────────────────

def test_missing_api_key_fails_at_startup(tmp_path):
    with pytest.raises(ConfigError, match="GEMINI_API_KEY"):
        create_app(Settings(upload_dir=str(tmp_path)))
