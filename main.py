# main.py
import os
import io
import re
import sys
import json
import base64
import random
import string
import asyncio
import logging
import zipfile
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any, Callable, Awaitable, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from PIL import Image, UnidentifiedImageError

from google import genai
from google.genai import errors, types

# ------------------ ENV & CONFIG ------------------
load_dotenv()
# Fallback credential; the user-supplied key from settings wins when present.
API_KEY = os.getenv("GEMINI_API_KEY")

# Models (override via env if your account uses different names)
LLM_MODEL = os.getenv("PLANNING_MODEL", "gemini-2.5-flash")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image-preview")
IMAGE_ASPECT_RATIO = "16:9"

# Pause between two image requests so a run stays under the per-minute limit
REQUEST_DELAY_SECONDS = float(os.getenv("REQUEST_DELAY_SECONDS", "6"))
MAX_REFERENCE_BYTES = int(os.getenv("MAX_REFERENCE_BYTES", str(2 * 1024 * 1024)))
MIN_IMAGE_COUNT, MAX_IMAGE_COUNT = 1, 2
DEFAULT_IMAGE_COUNT = 2
PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "0") == "1"
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", "output"))

EXPORT_ARCHIVE_NAME = "image_generator_scenes.zip"
MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}

log = logging.getLogger("storyboard")

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


ANALYSIS_PROMPT_TEMPLATE = load_prompt("script_analysis")
SCENE_IMAGE_TEMPLATE = load_prompt("scene_image")

# ------------------ ERRORS ------------------------


class ConfigurationError(RuntimeError):
    """Raised when no usable Gemini credential is configured."""


class AnalysisError(RuntimeError):
    """Raised when a script cannot be turned into characters and scenes."""


class ImageUploadError(ValueError):
    """Raised for reference uploads that are too large or not images."""


class ErrorKind(str, Enum):
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    INVALID_KEY = "invalid_key"
    TRANSIENT = "transient"

    @property
    def fatal(self) -> bool:
        return self is not ErrorKind.TRANSIENT


ERROR_MESSAGES = {
    ErrorKind.QUOTA: "The daily image quota for this API key is used up. "
                     "Try again tomorrow or switch to another key in Settings.",
    ErrorKind.RATE_LIMIT: "Too many requests were sent in a short time. "
                          "Wait a minute, then regenerate the missing images.",
    ErrorKind.INVALID_KEY: "The Gemini API key was rejected. "
                           "Check the key in Settings and try again.",
}

# ------------------ DATA MODELS -------------------


class ReferenceImage(BaseModel):
    mime_type: str
    data: str  # base64
    filename: str = ""

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)


class Character(BaseModel):
    id: str
    name: str
    description: str = ""
    reference_image: Optional[ReferenceImage] = None


class GeneratedImage(BaseModel):
    mime_type: str = "image/png"
    data: str  # base64

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    @property
    def extension(self) -> str:
        return MIME_EXTENSIONS.get(self.mime_type, "png")


class Scene(BaseModel):
    id: str
    title: str
    dialogue: str
    # None marks a candidate whose generation failed
    generated_images: List[Optional[GeneratedImage]] = Field(default_factory=list)
    selected_image: Optional[GeneratedImage] = None


class Settings(BaseModel):
    api_key: Optional[str] = None
    image_count: int = Field(DEFAULT_IMAGE_COUNT, ge=MIN_IMAGE_COUNT, le=MAX_IMAGE_COUNT)


class AnalyzedScene(BaseModel):
    title: str
    dialogue: str


class AnalysisResponse(BaseModel):
    characters: List[str]
    scenes: List[AnalyzedScene]


class SlotError(BaseModel):
    scene_id: str
    slot: int
    kind: ErrorKind
    message: str


class GenerationOutcome(BaseModel):
    scenes: List[Scene]
    errors: List[SlotError] = Field(default_factory=list)
    aborted: bool = False

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1].message if self.errors else None

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone."""
    return re.sub(r"\{(\w+)\}", lambda m: kv.get(m.group(1), m.group(0)), template)


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def slugify(text: str, fallback: str = "item") -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text or fallback


def first_json_block(s: str) -> str:
    # Prefer the largest parseable object or array in the text
    starts = [m.start() for m in re.finditer(r"[\{\[]", s)]
    best_chunk = None
    best_size = 0

    for i in starts:
        for j in range(len(s), i + 1, -1):
            chunk = s[i:j]
            try:
                json.loads(chunk)
            except ValueError:
                continue
            if len(chunk) > best_size:
                best_chunk = chunk
                best_size = len(chunk)
            break

    if best_chunk:
        return best_chunk
    raise ValueError("No valid JSON in model output")


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b))


def load_reference_image(data: bytes, filename: str = "",
                         max_bytes: int = MAX_REFERENCE_BYTES) -> ReferenceImage:
    """
    Validate an uploaded reference picture and keep its original bytes.

    The MIME type comes from what Pillow detects, not from the client.
    """
    if not data:
        raise ImageUploadError("The uploaded file is empty.")
    if len(data) > max_bytes:
        raise ImageUploadError(
            f"Images must not exceed {max_bytes // (1024 * 1024)}MB.")
    try:
        img = image_bytes_to_pil(data)
        fmt = img.format
        img.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise ImageUploadError(f"Not a readable image: {e}")
    mime = Image.MIME.get(fmt or "", "")
    if not mime.startswith("image/"):
        raise ImageUploadError(f"Unsupported image format: {fmt}")
    return ReferenceImage(mime_type=mime,
                          data=base64.b64encode(data).decode("utf-8"),
                          filename=filename)

# ------------------ ERROR CLASSIFICATION ----------


def _error_entries(err: errors.APIError) -> List[Dict[str, Any]]:
    details = err.details if isinstance(err.details, dict) else {}
    body = details.get("error", details)
    if not isinstance(body, dict):
        return []
    entries = body.get("details") or []
    return [e for e in entries if isinstance(e, dict)]


def _is_daily_quota(entries: List[Dict[str, Any]]) -> bool:
    for entry in entries:
        if not entry.get("@type", "").endswith("QuotaFailure"):
            continue
        for v in entry.get("violations") or []:
            ident = f"{v.get('quotaId', '')} {v.get('quotaMetric', '')}".lower()
            if "perday" in ident or "per_day" in ident or "daily" in ident:
                return True
    return False


def _has_reason(entries: List[Dict[str, Any]], reason: str) -> bool:
    return any(e.get("reason") == reason for e in entries)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a Gemini SDK error onto the fatal/transient taxonomy using status codes."""
    if not isinstance(exc, errors.APIError):
        return ErrorKind.TRANSIENT
    status = (exc.status or "").upper()
    entries = _error_entries(exc)
    if exc.code == 429 or status == "RESOURCE_EXHAUSTED":
        return ErrorKind.QUOTA if _is_daily_quota(entries) else ErrorKind.RATE_LIMIT
    if exc.code in (401, 403) or status in ("UNAUTHENTICATED", "PERMISSION_DENIED"):
        return ErrorKind.INVALID_KEY
    if exc.code == 400 and _has_reason(entries, "API_KEY_INVALID"):
        return ErrorKind.INVALID_KEY
    return ErrorKind.TRANSIENT


def error_message(kind: ErrorKind, slot: int, scene_number: int) -> str:
    if kind in ERROR_MESSAGES:
        return ERROR_MESSAGES[kind]
    return f"Could not create image {slot + 1} for scene {scene_number}."

# ------------------ PROMPT LOGGER -----------------


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None):
        self.out_file = out_file
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if PRINT_PROMPTS:
            print(block)

    def flush(self):
        if self.out_file is not None:
            self.out_file.write_text("".join(self.lines), encoding="utf-8")

# ------------------ GENAI WRAPPER ----------------


class GAIC:
    def __init__(self, api_key: str):
        if not api_key:
            raise ConfigurationError("Set a Gemini API key in Settings first.")
        self.client = genai.Client(api_key=api_key)

    # Structured output generation
    async def generate_structured(self, prompt: str, response_schema, model: str = LLM_MODEL):
        resp = await self.client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config={
                "response_mime_type": "application/json",
                "response_schema": response_schema,
            }
        )
        if resp.parsed is not None:
            return resp.parsed
        return response_schema.model_validate_json(first_json_block(resp.text or ""))

    async def generate_image(self, prompt: str, ref_parts: Optional[List[types.Part]] = None,
                             model: str = IMAGE_MODEL) -> GeneratedImage:
        """
        Generate one image from a text prompt plus inline reference images.
        Raises RuntimeError when the model answers without an image.
        """
        resp = await self.client.aio.models.generate_content(
            model=model,
            contents=[prompt, *(ref_parts or [])],
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE", "TEXT"],
                image_config=types.ImageConfig(aspect_ratio=IMAGE_ASPECT_RATIO),
            ),
        )
        for cand in resp.candidates or []:
            for part in (cand.content.parts if cand.content else None) or []:
                if part.inline_data and part.inline_data.data:
                    raw = part.inline_data.data
                    # Validate that it's actually image data
                    img = image_bytes_to_pil(raw)
                    log.debug("Gemini image generated: %s, %s", img.size, img.mode)
                    mime = part.inline_data.mime_type or Image.MIME.get(img.format or "", "image/png")
                    return GeneratedImage(mime_type=mime, data=base64.b64encode(raw).decode("utf-8"))
        raise RuntimeError("Gemini returned no image")


def resolve_api_key(settings: Optional[Settings] = None) -> str:
    key = (settings.api_key if settings else None) or API_KEY
    if not key:
        raise ConfigurationError("Set a Gemini API key in Settings first.")
    return key

# ------------------ PACING ------------------------


class RequestPacer:
    """
    Runs jobs one at a time with a fixed pause before every job but the first.

    One pacer covers one generation run, so no two requests of that run are
    sent back-to-back.
    """

    def __init__(self, spacing: float = REQUEST_DELAY_SECONDS,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.spacing = spacing
        self._sleep = sleep
        self.jobs_run = 0

    async def run(self, job: Callable[[], Awaitable[Any]]) -> Any:
        if self.jobs_run and self.spacing > 0:
            await self._sleep(self.spacing)
        self.jobs_run += 1
        return await job()

# ------------------ PROMPT BUILDER ----------------


def build_analysis_prompt(script: str) -> str:
    return fill(ANALYSIS_PROMPT_TEMPLATE, script=script)


def build_character_lines(characters: List[Character]) -> str:
    return "\n".join(f"- {c.name}: {c.description.strip() or '(Not described)'}"
                     for c in characters)


def build_scene_prompt(scene: Scene, characters: List[Character], additional_prompt: str = "") -> str:
    extra = additional_prompt.strip()
    return fill(SCENE_IMAGE_TEMPLATE,
                characters=build_character_lines(characters),
                title=scene.title,
                dialogue=scene.dialogue,
                additional=f"Additional Instructions: {extra}\n" if extra else "")


def reference_image_part(ref: ReferenceImage) -> types.Part:
    return types.Part.from_bytes(data=ref.raw_bytes(), mime_type=ref.mime_type)


async def prepare_reference_parts(characters: List[Character]) -> List[types.Part]:
    refs = [c.reference_image for c in characters if c.reference_image]
    return list(await asyncio.gather(
        *(asyncio.to_thread(reference_image_part, r) for r in refs)))

# ------------------ PIPELINE STEPS ---------------


async def analyze_script(g: GAIC, script: str, logger: PromptLogger) -> Tuple[List[Character], List[Scene]]:
    if not script.strip():
        raise AnalysisError("The script is empty.")
    prompt = build_analysis_prompt(script)
    logger.log("SCRIPT_ANALYSIS_PROMPT", prompt)
    try:
        response = await g.generate_structured(prompt, AnalysisResponse)
        if not isinstance(response, AnalysisResponse):
            response = AnalysisResponse.model_validate(response)
    except errors.APIError as e:
        log.error("Script analysis failed: %s", e)
        kind = classify_error(e)
        raise AnalysisError(ERROR_MESSAGES.get(
            kind, "Could not analyse the dialogue. Check the format or API key and try again.")) from e
    except (ValidationError, ValueError) as e:
        log.error("Script analysis returned malformed JSON: %s", e)
        raise AnalysisError("The analysis response was malformed. Please try again.") from e
    except Exception as e:
        log.error("Script analysis failed", exc_info=True)
        raise AnalysisError(
            "Could not analyse the dialogue. Check the format or API key and try again.") from e
    logger.log("SCRIPT_ANALYSIS_RESPONSE", str(response))

    # Dedup by name, first appearance wins
    seen, names = set(), []
    for name in response.characters:
        k = name.strip()
        if k and k not in seen:
            names.append(k)
            seen.add(k)

    characters = [Character(id=f"char-{i}", name=n) for i, n in enumerate(names)]
    scenes = [Scene(id=f"scene-{i}", title=s.title, dialogue=s.dialogue)
              for i, s in enumerate(response.scenes)]
    return characters, scenes


async def generate_scene_candidates(g: GAIC, pacer: RequestPacer, scene: Scene, scene_number: int,
                                    prompt: str, ref_parts: List[types.Part], image_count: int,
                                    on_progress: Optional[Callable[[str], None]] = None
                                    ) -> Tuple[List[Optional[GeneratedImage]], List[SlotError], bool]:
    """Request image_count candidates for one scene; stops early on a fatal error."""
    images: List[Optional[GeneratedImage]] = []
    slot_errors: List[SlotError] = []
    for slot in range(image_count):
        if on_progress:
            on_progress(f"Generating image {slot + 1}/{image_count} for scene {scene_number}...")
        try:
            images.append(await pacer.run(lambda: g.generate_image(prompt, ref_parts)))
        except Exception as e:
            kind = classify_error(e)
            log.warning("Image %d for scene %d failed (%s): %s",
                        slot + 1, scene_number, kind.value, e, exc_info=not kind.fatal)
            images.append(None)
            slot_errors.append(SlotError(scene_id=scene.id, slot=slot, kind=kind,
                                         message=error_message(kind, slot, scene_number)))
            if kind.fatal:
                return images, slot_errors, True
    return images, slot_errors, False


async def generate_all_scenes(g: GAIC, characters: List[Character], scenes: List[Scene],
                              image_count: int, logger: PromptLogger,
                              pacer: Optional[RequestPacer] = None,
                              on_progress: Optional[Callable[[str], None]] = None,
                              on_scene_done: Optional[Callable[[Scene], None]] = None) -> GenerationOutcome:
    pacer = pacer or RequestPacer()
    result = [s.model_copy(deep=True) for s in scenes]
    all_errors: List[SlotError] = []
    aborted = False

    for i, scene in enumerate(scenes):
        prompt = build_scene_prompt(scene, characters)
        logger.log(f"SCENE_IMAGE_PROMPT [{scene.id}]", prompt)
        ref_parts = await prepare_reference_parts(characters)
        images, slot_errors, fatal = await generate_scene_candidates(
            g, pacer, scene, i + 1, prompt, ref_parts, image_count, on_progress)
        result[i] = scene.model_copy(update={"generated_images": images, "selected_image": None})
        all_errors.extend(slot_errors)
        if on_scene_done:
            on_scene_done(result[i])
        if fatal:
            log.warning("Generation aborted at scene %d", i + 1)
            aborted = True
            break

    return GenerationOutcome(scenes=result, errors=all_errors, aborted=aborted)


async def regenerate_scene(g: GAIC, characters: List[Character], scene: Scene, scene_number: int,
                           additional_prompt: str, image_count: int, logger: PromptLogger,
                           pacer: Optional[RequestPacer] = None,
                           on_progress: Optional[Callable[[str], None]] = None) -> GenerationOutcome:
    pacer = pacer or RequestPacer()
    prompt = build_scene_prompt(scene, characters, additional_prompt)
    logger.log(f"SCENE_REGENERATE_PROMPT [{scene.id}]", prompt)
    ref_parts = await prepare_reference_parts(characters)
    images, slot_errors, fatal = await generate_scene_candidates(
        g, pacer, scene, scene_number, prompt, ref_parts, image_count, on_progress)
    updated = scene.model_copy(update={"generated_images": images, "selected_image": None})
    return GenerationOutcome(scenes=[updated], errors=slot_errors, aborted=fatal)

# ------------------ EXPORT ------------------------


def export_file_name(scene_number: int, image: GeneratedImage, label: str = "selected") -> str:
    return f"scene_{scene_number}_{label}.{image.extension}"


def build_export_zip(scenes: List[Scene]) -> bytes:
    """Zip one file per scene that has a selected image, named by scene position."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for i, scene in enumerate(scenes):
            if scene.selected_image is None:
                continue
            zf.writestr(export_file_name(i + 1, scene.selected_image),
                        scene.selected_image.raw_bytes())
    return buf.getvalue()

# ------------------ HEADLESS RUN ------------------


def attach_reference_images(characters: List[Character], refs_dir: Path) -> List[Character]:
    """Pick up <slugified-name>.<ext> files from refs_dir as reference images."""
    out = []
    for c in characters:
        ref = None
        for p in sorted(refs_dir.glob(f"{slugify(c.name)}.*")):
            try:
                ref = load_reference_image(p.read_bytes(), p.name)
                break
            except ImageUploadError as e:
                log.warning("Skipping reference %s: %s", p, e)
        out.append(c.model_copy(update={"reference_image": ref}))
    return out


async def run_pipeline_async(script: str, out_root: Path, refs_dir: Optional[Path] = None,
                             image_count: int = DEFAULT_IMAGE_COUNT) -> GenerationOutcome:
    ensure_dir(out_root)
    logger = PromptLogger(out_root / "prompts_used.txt")
    g = GAIC(resolve_api_key())

    print(">> Analysing dialogue with Gemini...")
    characters, scenes = await analyze_script(g, script, logger)
    print(f"   Characters: {[c.name for c in characters]}")
    print(f"   Scenes: {len(scenes)}")
    if refs_dir is not None:
        characters = attach_reference_images(characters, refs_dir)
    missing = [c.name for c in characters if c.reference_image is None]
    if missing:
        print(f"   No reference image for: {', '.join(missing)}")

    print(">> Generating scene images...")
    outcome = await generate_all_scenes(g, characters, scenes, image_count, logger,
                                        on_progress=lambda m: print(f"   {m}"))
    for err in outcome.errors:
        print(f"   ! {err.message}")

    manifest: Dict[str, Any] = {
        "characters": [{"name": c.name, "reference": c.reference_image.filename if c.reference_image else None}
                       for c in characters],
        "scenes": [],
    }
    for i, s in enumerate(outcome.scenes):
        files = []
        for slot, img in enumerate(s.generated_images):
            if img is None:
                files.append(None)
                continue
            fname = export_file_name(i + 1, img, "AB"[slot] if slot < 2 else str(slot + 1))
            (out_root / fname).write_bytes(img.raw_bytes())
            files.append(fname)
        manifest["scenes"].append({"id": s.id, "title": s.title, "dialogue": s.dialogue, "files": files})
    manifest["aborted"] = outcome.aborted
    (out_root / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")

    logger.flush()
    print(f">> Done. Output at: {out_root}")
    return outcome


def run_pipeline(script: str, out_root: Path, refs_dir: Optional[Path] = None,
                 image_count: int = DEFAULT_IMAGE_COUNT) -> GenerationOutcome:
    return asyncio.run(run_pipeline_async(script, out_root, refs_dir, image_count))


# ------------------ CLI -------------------------
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")
    if len(sys.argv) < 2 or not Path(sys.argv[1]).exists():
        print("Usage: python main.py SCRIPT.txt [REFERENCE_DIR]")
        sys.exit(1)

    script_path = Path(sys.argv[1])
    refs = Path(sys.argv[2]) if len(sys.argv) > 2 else None
    run_id = "".join(random.choices(
        string.ascii_lowercase + string.digits, k=6))
    out_dir = OUTPUT_DIR / f"{slugify(script_path.stem)}-{run_id}"
    try:
        run_pipeline(script_path.read_text(encoding="utf-8"), out_dir, refs)
    except (ConfigurationError, AnalysisError) as e:
        print(f"Error: {e}")
        sys.exit(1)
