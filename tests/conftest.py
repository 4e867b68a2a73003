import io
import zlib
import base64
import struct
import itertools

import pytest
from PIL import Image

from main import GeneratedImage, AnalysisResponse


def png_bytes(color=(255, 0, 0), size=(4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def png_header_only(width=40000, height=40000) -> bytes:
    """A tiny PNG whose header claims a huge canvas."""
    def chunk(tag: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + tag + body + struct.pack(">I", zlib.crc32(tag + body))
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IEND", b"")


class FakeGemini:
    """Stands in for GAIC: replays queued images or exceptions in call order."""

    serial = itertools.count(1)

    def __init__(self, outcomes=None, analysis=None):
        self.outcomes = list(outcomes or [])
        self.analysis = analysis
        self.image_calls = []
        self.structured_calls = []

    async def generate_structured(self, prompt, response_schema):
        self.structured_calls.append(prompt)
        if isinstance(self.analysis, BaseException):
            raise self.analysis
        return self.analysis

    async def generate_image(self, prompt, ref_parts=None):
        self.image_calls.append((prompt, list(ref_parts or [])))
        out = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(out, BaseException):
            raise out
        if out is None:
            n = next(FakeGemini.serial)
            out = GeneratedImage(mime_type="image/png",
                                 data=base64.b64encode(png_bytes((n % 256, n // 256 % 256, 7))).decode())
        return out


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def png():
    return png_bytes


@pytest.fixture
def huge_png():
    return png_header_only()


@pytest.fixture
def fake_gemini():
    return FakeGemini


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def john_jane_analysis():
    return AnalysisResponse.model_validate({
        "characters": ["JOHN", "JANE"],
        "scenes": [
            {"title": "John says hi", "dialogue": "JOHN: Hi"},
            {"title": "Jane answers", "dialogue": "JANE: Hi back"},
        ],
    })
