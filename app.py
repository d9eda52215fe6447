import base64
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlparse

from flask import Flask, current_app, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, NotFound

from config import Settings
from errors import ConfigError, FetchError, ValidationError
from generation import (
    DEFAULT_DESIGN_SIZE,
    DESIGN_SIZES,
    GenerationRequest,
    ImageAsset,
    ImageFetcher,
    MockupGenerator,
    build_instruction,
    size_spec,
)
from imaging import CANONICAL_MIME, OutputSpec, key_white_background, normalize_to_png, transcode
from storage import DiskSink, InlineSink, RetentionSweeper

logger = logging.getLogger(__name__)

SERVICE_NAME = "Mug Mockup API"
MISSING_FIELDS = "Missing required fields: mockupUrl and designUrl"


@dataclass
class AppServices:
    """Process-wide collaborators, built once in ``create_app``."""

    settings: Settings
    fetcher: ImageFetcher
    generator: MockupGenerator
    sink: InlineSink | DiskSink
    sweeper: RetentionSweeper | None = None

    def close(self):
        if self.sweeper is not None:
            self.sweeper.stop()
        self.generator.close()


def _services() -> AppServices:
    return current_app.extensions["mockup"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------
# REQUEST PARSING
# -----------------------------
def _require_http_url(name: str, value) -> str:
    value = str(value).strip()
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{name} must be an http(s) URL")
    return value


def _int_field(body: dict, name: str, default: int) -> int:
    raw = body.get(name)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


def parse_generate_body(body: dict, settings: Settings) -> dict:
    """Validate the generate-mockup payload. Raises ``ValidationError``."""
    mockup_url = body.get("mockupUrl")
    design_url = body.get("designUrl")
    if not mockup_url or not design_url:
        raise ValidationError(MISSING_FIELDS)

    reference_url = body.get("referenceUrl") or None

    output_format = str(body.get("outputFormat") or "jpeg").strip().lower()
    if output_format == "jpg":
        output_format = "jpeg"
    if output_format not in ("jpeg", "png"):
        raise ValidationError("outputFormat must be 'jpeg' or 'png'")

    quality = max(1, min(100, _int_field(body, "quality", settings.default_quality)))

    max_width = _int_field(body, "maxWidth", settings.default_max_width)
    if max_width <= 0:
        raise ValidationError("maxWidth must be a positive integer")

    design_size = str(body.get("designSize") or DEFAULT_DESIGN_SIZE).strip().lower()
    if design_size not in DESIGN_SIZES:
        design_size = DEFAULT_DESIGN_SIZE

    return {
        "mockup_url": _require_http_url("mockupUrl", mockup_url),
        "design_url": _require_http_url("designUrl", design_url),
        "reference_url": _require_http_url("referenceUrl", reference_url) if reference_url else None,
        "output": OutputSpec(output_format=output_format, quality=quality, max_dimension=max_width),
        "design_size": design_size,
    }


def _normalized(asset: ImageAsset) -> ImageAsset:
    return ImageAsset(data=normalize_to_png(asset.data, asset.mime_type), mime_type=CANONICAL_MIME)


# -----------------------------
# APP FACTORY
# -----------------------------
def create_app(settings: Settings | None = None, generator: MockupGenerator | None = None,
               fetcher: ImageFetcher | None = None, start_sweeper: bool | None = None) -> Flask:
    settings = settings or Settings.from_env()
    settings.validate(require_api_key=generator is None)

    app = Flask(__name__)
    CORS(app)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length_mb * 1024 * 1024

    if generator is None:
        generator = MockupGenerator.from_api_key(
            settings.gemini_api_key,
            model=settings.gemini_model,
            timeout=settings.generation_timeout,
            prompt_position=settings.prompt_position,
        )

    sweeper = None
    if settings.persist:
        sink = DiskSink(settings.upload_dir, settings.public_base_url)
        sweeper = RetentionSweeper(
            sink.directory,
            max_age=settings.retention_hours * 3600,
            interval=settings.sweep_interval_minutes * 60,
        )
    else:
        sink = InlineSink()

    services = AppServices(
        settings=settings,
        fetcher=fetcher or ImageFetcher(timeout=settings.fetch_timeout),
        generator=generator,
        sink=sink,
        sweeper=sweeper,
    )
    app.extensions["mockup"] = services

    if sweeper is not None and (start_sweeper is None or start_sweeper):
        sweeper.start()

    _register_routes(app, settings)
    return app


def _register_routes(app: Flask, settings: Settings):

    @app.errorhandler(Exception)
    def unhandled(e):
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "error": e.name, "message": e.description}), e.code
        logger.exception("Unhandled error")
        return jsonify({"success": False, "error": "Internal server error", "message": str(e)}), 500

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({
            "status": "ok",
            "message": f"{SERVICE_NAME} is running",
            "timestamp": _now_iso(),
        })

    @app.route("/api/generate-mockup", methods=["POST"])
    def generate_mockup():
        """
        JSON (or form) body:
          - mockupUrl: blank mug photo (required)
          - designUrl: artwork to print (required)

        optional:
          - referenceUrl: finished mockup to copy size/position from
          - outputFormat: jpeg | png (default jpeg)
          - quality: 1-100 (default DEFAULT_QUALITY)
          - maxWidth: longest side cap in px (default DEFAULT_MAX_WIDTH)
          - designSize: small | medium | large (default medium)

        400 for a missing mockupUrl/designUrl, for URLs that are not http(s),
        for an outputFormat other than jpeg/jpg/png, and for a quality or
        maxWidth that is not an integer (or a maxWidth <= 0). An out-of-range
        quality is clamped to 1-100; an unknown designSize falls back to medium.
        """
        services = _services()
        start_time = time.time()
        processing_log = []

        def t_ms():
            return int((time.time() - start_time) * 1000)

        def log(step, success=True, **data):
            entry = {"step": step, "success": bool(success), "t_ms": t_ms()}
            entry.update(data)
            processing_log.append(entry)

        def attach_logs_to_response(resp):
            summary = [f"{e['step']}:{'ok' if e['success'] else 'fail'}@{e['t_ms']}ms" for e in processing_log]
            resp.headers["X-Step-Log"] = " | ".join(summary)
            b = json.dumps(processing_log, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            resp.headers["X-Step-Log-Json"] = base64.b64encode(b).decode("ascii")
            resp.headers["X-Processing-Time"] = f"{time.time() - start_time:.2f}s"
            return resp

        def json_response(payload, status=200):
            resp = jsonify(payload)
            resp.status_code = status
            return attach_logs_to_response(resp)

        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            body = request.form.to_dict()

        try:
            params = parse_generate_body(body, services.settings)
        except ValidationError as e:
            log("validate_input", success=False, reason=str(e))
            logger.info("Rejected request: %s", e)
            return json_response({"success": False, "error": str(e)}, status=400)
        log("validate_input", success=True)

        output = params["output"]
        logger.info("Processing mockup request: mockup=%s design=%s reference=%s size=%s format=%s quality=%d",
                    params["mockup_url"], params["design_url"], params["reference_url"],
                    params["design_size"], output.output_format, output.quality)

        try:
            mockup = services.fetcher.fetch(params["mockup_url"], label="mockup")
            log("fetch_mockup", bytes=mockup.byte_length, mime=mockup.mime_type)
            design = services.fetcher.fetch(params["design_url"], label="design")
            log("fetch_design", bytes=design.byte_length, mime=design.mime_type)

            reference = None
            if params["reference_url"]:
                try:
                    reference = services.fetcher.fetch(params["reference_url"], label="reference")
                    log("fetch_reference", bytes=reference.byte_length, mime=reference.mime_type)
                except FetchError as e:
                    logger.warning("Continuing without reference image: %s", e)
                    log("fetch_reference", success=False, error=str(e))

            mockup = _normalized(mockup)
            design = _normalized(design)
            if reference is not None:
                reference = _normalized(reference)
            log("normalize")

            if services.settings.key_white_background:
                design = ImageAsset(
                    data=key_white_background(design.data, threshold=services.settings.key_threshold),
                    mime_type=CANONICAL_MIME,
                )
                log("key_background", threshold=services.settings.key_threshold)

            gen_request = GenerationRequest(
                primary_image=mockup,
                overlay_image=design,
                reference_image=reference,
                instruction=build_instruction(params["design_size"], has_reference=reference is not None),
                design_size=params["design_size"],
            )
            generated = services.generator.generate(gen_request)
            log("generate", bytes=len(generated.data), mime=generated.mime_type)

            result = transcode(generated.data, output)
            log("transcode", bytes=result.output_bytes, size=f"{result.width}x{result.height}")

            delivered = services.sink.deliver(result)
            log("deliver", mode=services.sink.mode)

        except Exception as e:
            logger.exception("Failed to generate mockup")
            log("exception", success=False, error=str(e))
            return json_response({
                "success": False,
                "error": "Failed to generate mockup",
                "message": str(e),
            }, status=500)

        payload = {"success": True}
        payload.update(delivered)
        payload.update(result.metrics())
        payload.update({
            "format": output.output_format,
            "quality": output.quality,
            "designSize": params["design_size"],
            "sizeSpec": size_spec(params["design_size"]),
            "referenceUsed": reference is not None,
            "timestamp": _now_iso(),
        })
        return json_response(payload)

    if not settings.persist:
        return

    def _serve(filename, as_attachment):
        directory = _services().sink.directory
        try:
            return send_from_directory(directory, filename, as_attachment=as_attachment)
        except (NotFound, FileNotFoundError):
            # the sweeper may remove a file between lookup and send
            return jsonify({"success": False, "error": "File not found"}), 404

    @app.route("/uploads/<path:filename>", methods=["GET"])
    def uploaded_file(filename):
        return _serve(filename, as_attachment=False)

    @app.route("/download/<path:filename>", methods=["GET"])
    def download(filename):
        return _serve(filename, as_attachment=True)

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": SERVICE_NAME,
            "status": "running",
            "outputMode": settings.output_mode,
            "retentionHours": settings.retention_hours,
            "endpoints": {
                "health": "GET /health",
                "generate": "POST /api/generate-mockup",
                "files": "GET /uploads/<filename>",
                "download": "GET /download/<filename>",
            },
            "designSizes": DESIGN_SIZES,
        })


# -----------------------------
# ENTRYPOINT
# -----------------------------
def main():
    try:
        settings = Settings.from_env().validate()
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app(settings)
    services = app.extensions["mockup"]

    def _terminate(signum, frame):
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _terminate)

    logger.info("%s listening on port %d (%s mode, model %s)",
                SERVICE_NAME, settings.port, settings.output_mode, settings.gemini_model)
    try:
        app.run(host="0.0.0.0", port=settings.port, debug=settings.debug, use_reloader=False)
    finally:
        services.close()
        logger.info("Shut down")


if __name__ == "__main__":
    main()
