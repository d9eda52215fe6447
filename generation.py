"""Fetching source images and asking Gemini to composite the mockup."""

import base64
import concurrent.futures
import logging
import threading
from dataclasses import dataclass

import requests
from google import genai
from google.genai import types

from errors import FetchError, GenerationTimeoutError, NoCandidateError, NoImagePartError

logger = logging.getLogger(__name__)

DEFAULT_MIME = "image/png"
USER_AGENT = "mug-mockup-api/1.0"


@dataclass(frozen=True)
class ImageAsset:
    data: bytes
    mime_type: str = DEFAULT_MIME

    @property
    def byte_length(self) -> int:
        return len(self.data)


# -----------------------------
# FETCH
# -----------------------------
class ImageFetcher:
    """Plain GET, one attempt, bounded by ``timeout`` seconds.

    Each fetch is an independent ``requests.get`` so request threads share no
    connection state.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def fetch(self, url: str, label: str = "image") -> ImageAsset:
        try:
            resp = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
        except requests.Timeout as e:
            raise FetchError(f"Timed out fetching {label} after {self.timeout:g}s") from e
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch {label}: {e}") from e

        if not resp.ok:
            raise FetchError(f"Failed to fetch {label}: HTTP {resp.status_code} {resp.reason or ''}".rstrip())
        if not resp.content:
            raise FetchError(f"Failed to fetch {label}: empty body")

        mime_type = (resp.headers.get("Content-Type") or DEFAULT_MIME).split(";", 1)[0].strip().lower()
        logger.info("Fetched %s: %d bytes (%s)", label, len(resp.content), mime_type)
        return ImageAsset(data=resp.content, mime_type=mime_type or DEFAULT_MIME)


# -----------------------------
# INSTRUCTION
# -----------------------------
DESIGN_SIZES = {
    "small": {
        "coverage": "35-40%",
        "description": "Small, subtle design (like a small logo or icon)",
        "dimensions": "2 inches wide on a standard 11oz mug",
    },
    "medium": {
        "coverage": "50-60%",
        "description": "Medium-sized design (standard product mockup)",
        "dimensions": "3-3.5 inches wide on a standard 11oz mug",
    },
    "large": {
        "coverage": "65-75%",
        "description": "Large, prominent design (wrap-around effect)",
        "dimensions": "4-4.5 inches wide on a standard 11oz mug",
    },
}
DEFAULT_DESIGN_SIZE = "medium"


def size_spec(design_size: str) -> dict:
    return DESIGN_SIZES.get(design_size, DESIGN_SIZES[DEFAULT_DESIGN_SIZE])


def build_instruction(design_size: str = DEFAULT_DESIGN_SIZE, has_reference: bool = False) -> str:
    spec = size_spec(design_size)

    if has_reference:
        images = (
            "I am providing three images:\n"
            "1. A REFERENCE mockup showing EXACTLY the size and positioning I want you to replicate\n"
            '2. A base "Mug Mockup" image (blank mug photo)\n'
            '3. A "Design" image (artwork/logo to apply)'
        )
        sizing = (
            "- Study the REFERENCE image carefully and replicate the EXACT size and position of the design\n"
            "- The design in the reference shows the perfect scale - match it precisely\n"
            "- Maintain the same relative proportions as shown in the reference"
        )
        anchor = "the reference image"
        reminder = "REMEMBER: The reference image is your sizing guide. Match it exactly!"
    else:
        images = (
            "I am providing two images:\n"
            '1. A base "Mug Mockup" image (blank mug photo)\n'
            '2. A "Design" image (artwork/logo to apply)'
        )
        sizing = (
            f"- The design MUST cover approximately {spec['coverage']} of the visible mug width\n"
            f"- Design specifications: {spec['description']}\n"
            f"- Physical size reference: {spec['dimensions']}\n"
            "- The design size MUST remain consistent regardless of mug angle or perspective"
        )
        anchor = "standard product photography"
        reminder = (
            f'REMEMBER: Consistency is KEY. Every mockup with "{design_size}" size '
            f"should have the design at {spec['coverage']} of mug width."
        )

    return (
        "You are a world-class graphic designer specializing in product mockups.\n\n"
        f"{images}\n\n"
        f"CRITICAL SIZING REQUIREMENTS:\n{sizing}\n\n"
        "POSITIONING REQUIREMENTS:\n"
        "- Center the design both horizontally and vertically on the visible mug surface\n"
        f"- Position the design at the same height as shown in {anchor}\n"
        "- Maintain consistent positioning even if the mug is viewed from different angles\n\n"
        "QUALITY REQUIREMENTS:\n"
        "- Intelligently identify the visible surface of the mug in the base mockup\n"
        "- Map the design onto that surface following the physical curvature perfectly\n"
        "- Apply perspective distortion to match the mug's cylindrical shape\n"
        "- Match the lighting, shadows, and reflections of the original scene\n"
        "- The design should look naturally printed on the mug, not pasted on\n"
        "- Retain the original background and surrounding elements of the mockup\n"
        "- Ensure crisp, clear design details\n\n"
        f"{reminder}\n\n"
        "Generate a realistic, professionally-sized product mockup image."
    )


# -----------------------------
# REQUEST / RESPONSE TYPES
# -----------------------------
@dataclass(frozen=True)
class GenerationRequest:
    primary_image: ImageAsset
    overlay_image: ImageAsset
    instruction: str
    reference_image: ImageAsset | None = None
    design_size: str = DEFAULT_DESIGN_SIZE


@dataclass(frozen=True)
class GenerationResult:
    data: bytes
    mime_type: str = DEFAULT_MIME


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class InlineImagePart:
    data: bytes
    mime_type: str


@dataclass(frozen=True)
class UnknownPart:
    raw: object


def decode_part(part) -> TextPart | InlineImagePart | UnknownPart:
    inline = getattr(part, "inline_data", None)
    if inline is not None and getattr(inline, "data", None):
        data = inline.data
        if isinstance(data, str):
            data = base64.b64decode(data)
        return InlineImagePart(data=data, mime_type=getattr(inline, "mime_type", None) or DEFAULT_MIME)
    text = getattr(part, "text", None)
    if text:
        return TextPart(text=text)
    return UnknownPart(raw=part)


def decode_response(response) -> list:
    """Decoded parts of the first candidate. Raises ``NoCandidateError`` if there is none."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        raise NoCandidateError("No response from AI model")
    content = getattr(candidates[0], "content", None)
    return [decode_part(p) for p in (getattr(content, "parts", None) or [])]


def first_inline_image(parts) -> GenerationResult:
    for part in parts:
        if isinstance(part, InlineImagePart):
            return GenerationResult(data=part.data, mime_type=part.mime_type)
    raise NoImagePartError("No image in response")


# -----------------------------
# GEMINI CALL
# -----------------------------
class MockupGenerator:
    """Single-shot Gemini call with a wall-clock limit.

    ``prompt_position`` decides whether the instruction text goes before
    ("first") or after ("last") the images. Image order is always
    reference, mug, design.

    Every call gets its own daemon thread, so a call that outlives
    ``timeout`` never holds up the next request. The SDK client built by
    ``from_api_key`` carries the same limit as an HTTP timeout, which ends
    the abandoned call on its own.
    """

    def __init__(self, client, model: str = "gemini-2.5-flash-image", timeout: float = 60.0,
                 prompt_position: str = "first"):
        self.client = client
        self.model = model
        self.timeout = timeout
        self.prompt_position = prompt_position

    @classmethod
    def from_api_key(cls, api_key: str, timeout: float = 60.0, **kwargs) -> "MockupGenerator":
        client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )
        return cls(client, timeout=timeout, **kwargs)

    def build_parts(self, request: GenerationRequest) -> list:
        images = []
        if request.reference_image is not None:
            images.append(request.reference_image)
        images.extend([request.primary_image, request.overlay_image])

        parts = [types.Part.from_bytes(data=a.data, mime_type=a.mime_type) for a in images]
        if request.instruction:
            text = types.Part.from_text(text=request.instruction)
            if self.prompt_position == "last":
                parts.append(text)
            else:
                parts.insert(0, text)
        return parts

    def _call(self, parts):
        return self.client.models.generate_content(
            model=self.model,
            contents=[types.Content(role="user", parts=parts)],
            config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
        )

    def _submit(self, parts) -> concurrent.futures.Future:
        future = concurrent.futures.Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._call(parts))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=run, name="gemini-call", daemon=True).start()
        return future

    def generate(self, request: GenerationRequest) -> GenerationResult:
        parts = self.build_parts(request)
        logger.info("Calling %s with %d parts", self.model, len(parts))

        future = self._submit(parts)
        try:
            response = future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as e:
            raise GenerationTimeoutError(
                f"AI model did not respond within {self.timeout:g} seconds") from e

        decoded = decode_response(response)
        for part in decoded:
            if isinstance(part, TextPart):
                logger.debug("Model text: %s", part.text[:200])
        result = first_inline_image(decoded)
        logger.info("Model returned %d bytes (%s)", len(result.data), result.mime_type)
        return result

    def close(self):
        close = getattr(self.client, "close", None)
        if callable(close):
            close()
