import io
import os
import json
import queue
import asyncio
import logging
import threading
from enum import IntEnum
from pathlib import Path
from typing import Optional, Dict, Any, Generator, List

from flask import Flask, request, Response, send_file, jsonify
from dotenv import load_dotenv
from pydantic import ValidationError

from main import (GAIC, API_KEY, MAX_REFERENCE_BYTES, REQUEST_DELAY_SECONDS, EXPORT_ARCHIVE_NAME,
                  Character, Scene, Settings, ReferenceImage, GenerationOutcome, PromptLogger,
                  RequestPacer, ConfigurationError, AnalysisError, ImageUploadError,
                  analyze_script, generate_all_scenes, regenerate_scene, build_export_zip,
                  export_file_name, load_reference_image, resolve_api_key)

# Load environment variables
load_dotenv()

log = logging.getLogger("storyboard.server")

app = Flask(__name__, static_folder=None)
# Multipart overhead on top of the largest accepted reference image
app.config["MAX_CONTENT_LENGTH"] = MAX_REFERENCE_BYTES + 256 * 1024


ROOT = Path(__file__).parent
SETTINGS_PATH = Path(os.getenv("SETTINGS_PATH", str(Path.home() / ".dialogue_storyboard.json")))
SETTINGS_KEY = "image_generator_settings"


class StepError(RuntimeError):
    """Raised for wizard actions that are not allowed in the current step."""


class Step(IntEnum):
    INPUT = 1
    SETUP_REVIEW = 2
    REVIEW_SELECTION = 3


class SettingsStore:
    """JSON key-value file holding the settings object under SETTINGS_KEY."""

    def __init__(self, path: Path = SETTINGS_PATH):
        self.path = path

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.error("Error loading %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> Settings:
        raw = self._read_all().get(SETTINGS_KEY) or {}
        try:
            return Settings.model_validate(raw)
        except ValidationError as e:
            log.warning("Ignoring invalid stored settings: %s", e)
            return Settings()

    def save(self, settings: Settings) -> None:
        data = self._read_all()
        data[SETTINGS_KEY] = settings.model_dump(exclude_none=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        try:
            os.chmod(self.path, 0o600)
        except OSError as e:
            log.debug("Could not restrict permissions on %s: %s", self.path, e)


class WizardState:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.events: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self.thread: Optional[threading.Thread] = None
        self.prompt_log = PromptLogger()
        self.reset(force=True)

    # --- guards ---

    def _require(self, *steps: Step, idle: bool = True) -> None:
        if self.step not in steps:
            raise StepError(f"Not allowed in step {self.step.name}")
        if idle and self.busy:
            raise StepError("Another generation is still running")

    def _character_index(self, char_id: str) -> int:
        for i, c in enumerate(self.characters):
            if c.id == char_id:
                return i
        raise KeyError(char_id)

    def _scene_index(self, scene_id: str) -> int:
        for i, s in enumerate(self.scenes):
            if s.id == scene_id:
                return i
        raise KeyError(scene_id)

    # --- busy flag ---

    def begin(self, message: str) -> None:
        if self.busy:
            raise StepError("Another generation is still running")
        self.busy = True
        self.message = message
        self.error = None

    def progress(self, message: str) -> None:
        self.message = message
        self.events.put({"type": "progress", "message": message})

    def finish(self, error: Optional[str] = None) -> None:
        self.busy = False
        self.message = ""
        self.error = error

    # --- transitions ---

    def apply_analysis(self, script: str, characters: List[Character], scenes: List[Scene]) -> None:
        self._require(Step.INPUT, idle=False)
        self.script = script
        self.characters = characters
        self.scenes = scenes
        self.step = Step.SETUP_REVIEW

    def update_character(self, char_id: str, name: Optional[str] = None,
                         description: Optional[str] = None) -> Character:
        self._require(Step.SETUP_REVIEW)
        i = self._character_index(char_id)
        changes = {k: v for k, v in (("name", name), ("description", description)) if v is not None}
        self.characters[i] = self.characters[i].model_copy(update=changes)
        return self.characters[i]

    def set_reference_image(self, char_id: str, ref: ReferenceImage) -> Character:
        self._require(Step.SETUP_REVIEW)
        i = self._character_index(char_id)
        self.characters[i] = self.characters[i].model_copy(update={"reference_image": ref})
        return self.characters[i]

    def update_scene_title(self, scene_id: str, title: str) -> Scene:
        self._require(Step.SETUP_REVIEW)
        i = self._scene_index(scene_id)
        self.scenes[i] = self.scenes[i].model_copy(update={"title": title})
        return self.scenes[i]

    def ready_for_generation(self) -> bool:
        return all(c.reference_image is not None for c in self.characters)

    def apply_generation(self, outcome: GenerationOutcome) -> None:
        self._require(Step.SETUP_REVIEW, idle=False)
        if not self.ready_for_generation():
            raise StepError("Every character needs a reference image")
        self.scenes = list(outcome.scenes)
        self.step = Step.REVIEW_SELECTION

    def apply_regeneration(self, scene: Scene) -> None:
        self._require(Step.REVIEW_SELECTION, idle=False)
        i = self._scene_index(scene.id)
        self.scenes[i] = scene.model_copy(update={"selected_image": None})

    def select_image(self, scene_id: str, slot: Optional[int]) -> Scene:
        self._require(Step.REVIEW_SELECTION)
        i = self._scene_index(scene_id)
        scene = self.scenes[i]
        if slot is None:
            chosen = None
        else:
            if not 0 <= slot < len(scene.generated_images) or scene.generated_images[slot] is None:
                raise ValueError(f"Scene {scene_id} has no image in slot {slot}")
            chosen = scene.generated_images[slot]
        self.scenes[i] = scene.model_copy(update={"selected_image": chosen})
        return self.scenes[i]

    def reset(self, force: bool = False) -> None:
        if not force and self.busy:
            raise StepError("Wait for the running generation to finish")
        self.step = Step.INPUT
        self.script = ""
        self.characters: List[Character] = []
        self.scenes: List[Scene] = []
        self.busy = False
        self.message = ""
        self.error: Optional[str] = None

    # --- views ---

    def scene_number(self, scene_id: str) -> int:
        return self._scene_index(scene_id) + 1

    def snapshot(self) -> Dict[str, Any]:
        def selected_slot(s: Scene) -> Optional[int]:
            if s.selected_image is None:
                return None
            return next((i for i, img in enumerate(s.generated_images) if img == s.selected_image), None)

        return {
            "step": int(self.step),
            "script": self.script,
            "busy": self.busy,
            "message": self.message,
            "error": self.error,
            "ready": self.ready_for_generation(),
            "api_key_set": bool(self.settings.api_key or API_KEY),
            "image_count": self.settings.image_count,
            "characters": [{
                "id": c.id,
                "name": c.name,
                "description": c.description,
                "reference": (f"data:{c.reference_image.mime_type};base64,{c.reference_image.data}"
                              if c.reference_image else None),
            } for c in self.characters],
            "scenes": [{
                "id": s.id,
                "title": s.title,
                "dialogue": s.dialogue,
                "images": [img.data_url() if img else None for img in s.generated_images],
                "selected": selected_slot(s),
            } for s in self.scenes],
        }


settings_store = SettingsStore()
state = WizardState(settings_store.load())


def error_response(message: str, status: int):
    return jsonify({"error": message}), status


def make_pacer() -> RequestPacer:
    return RequestPacer(REQUEST_DELAY_SECONDS)


def generation_worker(st: WizardState, api_key: str, characters: List[Character],
                      scenes: List[Scene], image_count: int):
    events = st.events
    try:
        g = GAIC(api_key)

        def scene_done(scene: Scene):
            events.put({"type": "scene_done", "scene": scene.id})

        outcome = asyncio.run(generate_all_scenes(
            g, characters, scenes, image_count, st.prompt_log, pacer=make_pacer(),
            on_progress=st.progress, on_scene_done=scene_done))
        st.apply_generation(outcome)
        st.finish(outcome.last_error)
        for err in outcome.errors:
            events.put({"type": "error", "message": err.message, "fatal": err.kind.fatal})
        events.put({"type": "done", "aborted": outcome.aborted})
    except Exception as e:
        log.exception("Generation run failed")
        st.finish(str(e))
        events.put({"type": "error", "message": str(e), "fatal": True})
        events.put({"type": "done", "aborted": True})


def regeneration_worker(st: WizardState, api_key: str, characters: List[Character], scene: Scene,
                        scene_number: int, additional_prompt: str, image_count: int):
    events = st.events
    try:
        g = GAIC(api_key)
        outcome = asyncio.run(regenerate_scene(
            g, characters, scene, scene_number, additional_prompt, image_count,
            st.prompt_log, pacer=make_pacer(), on_progress=st.progress))
        st.apply_regeneration(outcome.scenes[0])
        st.finish(outcome.last_error)
        for err in outcome.errors:
            events.put({"type": "error", "message": err.message, "fatal": err.kind.fatal})
        events.put({"type": "done", "scene": scene.id, "aborted": outcome.aborted})
    except Exception as e:
        log.exception("Regeneration of %s failed", scene.id)
        st.finish(str(e))
        events.put({"type": "error", "message": str(e), "fatal": True})
        events.put({"type": "done", "scene": scene.id, "aborted": True})


def start_worker(target, *args) -> None:
    state.events = queue.Queue()
    t = threading.Thread(target=target, args=(state, *args), daemon=True)
    state.thread = t
    t.start()


@app.errorhandler(413)
def too_large(_e):
    if request.endpoint == "api_upload_reference":
        return error_response(f"Images must not exceed {MAX_REFERENCE_BYTES // (1024 * 1024)}MB.", 413)
    return error_response("Request is too large.", 413)


@app.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@app.route("/api/state")
def api_state():
    return jsonify(state.snapshot())


@app.route("/api/settings", methods=["GET"])
def api_get_settings():
    s = state.settings
    source = "settings" if s.api_key else ("environment" if API_KEY else None)
    return jsonify({"api_key_set": source is not None, "api_key_source": source,
                    "image_count": s.image_count})


@app.route("/api/settings", methods=["POST"])
def api_save_settings():
    data = request.get_json(force=True)
    api_key = (data.get("api_key") or "").strip() or None
    if "api_key" not in data:
        api_key = state.settings.api_key
    try:
        settings = Settings(api_key=api_key,
                            image_count=data.get("image_count", state.settings.image_count))
    except ValidationError:
        return error_response("Image count must be 1 or 2.", 400)
    settings_store.save(settings)
    state.settings = settings
    if state.error and not state.busy:
        state.error = None
    return jsonify({"success": True, "image_count": settings.image_count,
                    "api_key_set": bool(settings.api_key or API_KEY)})


@app.route("/api/analyze", methods=["POST"])
def api_analyze():
    data = request.get_json(force=True)
    script = (data.get("script") or "").strip()
    if not script:
        return error_response("Script text required", 400)
    if state.step != Step.INPUT:
        return error_response("Start over before analysing a new script", 409)
    try:
        g = GAIC(resolve_api_key(state.settings))
        state.begin("Analysing dialogue, please wait...")
    except ConfigurationError as e:
        state.error = str(e)
        return error_response(str(e), 400)
    except StepError as e:
        return error_response(str(e), 409)

    try:
        characters, scenes = asyncio.run(analyze_script(g, script, state.prompt_log))
    except AnalysisError as e:
        state.finish(str(e))
        return error_response(str(e), 502)
    state.apply_analysis(script, characters, scenes)
    state.finish()
    log.info("Analysed script: %d characters, %d scenes", len(characters), len(scenes))
    return jsonify(state.snapshot())


@app.route("/api/characters/<char_id>", methods=["PATCH"])
def api_update_character(char_id: str):
    data = request.get_json(force=True)
    try:
        state.update_character(char_id, data.get("name"), data.get("description"))
    except KeyError:
        return error_response(f"Character '{char_id}' not found", 404)
    except StepError as e:
        return error_response(str(e), 409)
    return jsonify(state.snapshot())


@app.route("/api/characters/<char_id>/reference", methods=["POST"])
def api_upload_reference(char_id: str):
    """Upload the reference picture used to keep a character consistent."""
    if 'file' not in request.files:
        return error_response("No file provided", 400)

    file = request.files['file']
    if file.filename == '':
        return error_response("No file selected", 400)

    try:
        ref = load_reference_image(file.read(), file.filename)
        state.set_reference_image(char_id, ref)
    except ImageUploadError as e:
        return error_response(str(e), 400)
    except KeyError:
        return error_response(f"Character '{char_id}' not found", 404)
    except StepError as e:
        return error_response(str(e), 409)
    return jsonify(state.snapshot())


@app.route("/api/scenes/<scene_id>", methods=["PATCH"])
def api_update_scene(scene_id: str):
    data = request.get_json(force=True)
    title = data.get("title")
    if title is None:
        return error_response("Missing title", 400)
    try:
        state.update_scene_title(scene_id, title)
    except KeyError:
        return error_response(f"Scene '{scene_id}' not found", 404)
    except StepError as e:
        return error_response(str(e), 409)
    return jsonify(state.snapshot())


@app.route("/api/generate", methods=["POST"])
def api_generate():
    if state.step != Step.SETUP_REVIEW:
        return error_response("Analyse a script first", 409)
    if not state.ready_for_generation():
        return error_response("Please provide a reference image for every character.", 400)
    try:
        api_key = resolve_api_key(state.settings)
        state.begin("Preparing image generation...")
    except ConfigurationError as e:
        state.error = str(e)
        return error_response(str(e), 400)
    except StepError as e:
        return error_response(str(e), 409)

    characters = [c.model_copy(deep=True) for c in state.characters]
    scenes = [s.model_copy(deep=True) for s in state.scenes]
    start_worker(generation_worker, api_key, characters, scenes, state.settings.image_count)
    return jsonify({"started": True, "scenes": len(scenes)}), 202


@app.route("/api/scenes/<scene_id>/regenerate", methods=["POST"])
def api_regenerate(scene_id: str):
    data = request.get_json(silent=True) or {}
    additional_prompt = data.get("additional_prompt") or ""
    if state.step != Step.REVIEW_SELECTION:
        return error_response("Generate the scenes first", 409)
    try:
        scene_number = state.scene_number(scene_id)
        api_key = resolve_api_key(state.settings)
        state.begin(f"Regenerating scene {scene_number}...")
    except KeyError:
        return error_response(f"Scene '{scene_id}' not found", 404)
    except ConfigurationError as e:
        state.error = str(e)
        return error_response(str(e), 400)
    except StepError as e:
        return error_response(str(e), 409)

    scene = state.scenes[scene_number - 1].model_copy(deep=True)
    characters = [c.model_copy(deep=True) for c in state.characters]
    start_worker(regeneration_worker, api_key, characters, scene, scene_number,
                 additional_prompt, state.settings.image_count)
    return jsonify({"started": True, "scene": scene_id}), 202


@app.route("/api/scenes/<scene_id>/select", methods=["POST"])
def api_select(scene_id: str):
    data = request.get_json(force=True)
    slot = data.get("slot")
    try:
        state.select_image(scene_id, None if slot is None else int(slot))
    except KeyError:
        return error_response(f"Scene '{scene_id}' not found", 404)
    except (TypeError, ValueError) as e:
        return error_response(str(e), 400)
    except StepError as e:
        return error_response(str(e), 409)
    return jsonify(state.snapshot())


@app.route("/api/scenes/<scene_id>/images/<int:slot>")
def api_scene_image(scene_id: str, slot: int):
    try:
        number = state.scene_number(scene_id)
    except KeyError:
        return "Not found", 404
    images = state.scenes[number - 1].generated_images
    if slot >= len(images) or images[slot] is None:
        return "Not found", 404
    img = images[slot]
    label = "AB"[slot] if slot < 2 else str(slot + 1)
    return send_file(io.BytesIO(img.raw_bytes()), mimetype=img.mime_type,
                     as_attachment=True, download_name=export_file_name(number, img, label))


@app.route("/api/export")
def api_export():
    if not any(s.selected_image for s in state.scenes):
        return error_response("Select at least one image first", 400)
    archive = build_export_zip(state.scenes)
    return send_file(io.BytesIO(archive), mimetype="application/zip",
                     as_attachment=True, download_name=EXPORT_ARCHIVE_NAME)


@app.route("/api/reset", methods=["POST"])
def api_reset():
    try:
        state.reset()
    except StepError as e:
        return error_response(str(e), 409)
    return jsonify(state.snapshot())


@app.route("/api/stream")
def api_stream() -> Response:
    events = state.events

    def gen() -> Generator[str, None, None]:
        yield "event: ping\n" "data: {}\n\n"
        while True:
            try:
                evt = events.get(timeout=60)
            except queue.Empty:
                yield "event: ping\n" "data: {}\n\n"
                continue
            yield f"data: {json.dumps(evt)}\n\n"
            if evt.get("type") == "done":
                break
    return Response(gen(), mimetype="text/event-stream")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    app.run(host="127.0.0.1", port=int(os.getenv("PORT", "5001")), debug=True, threaded=True)
