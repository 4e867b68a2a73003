import io
import zipfile

import pytest

import server
from main import Settings


@pytest.fixture
def client(monkeypatch, tmp_path, fake_gemini, john_jane_analysis):
    fakes = []

    def make_fake(api_key):
        g = fake_gemini(analysis=john_jane_analysis)
        g.api_key = api_key
        fakes.append(g)
        return g

    monkeypatch.setattr(server, "GAIC", make_fake)
    monkeypatch.setattr(server, "REQUEST_DELAY_SECONDS", 0)
    monkeypatch.setattr(server, "settings_store", server.SettingsStore(tmp_path / "settings.json"))
    monkeypatch.setattr(server, "state", server.WizardState(Settings(api_key="test-key", image_count=2)))
    c = server.app.test_client()
    c.fakes = fakes
    return c


def _wait(c):
    server.state.thread.join(timeout=10)
    return c.get("/api/state").get_json()


def _analyze(c):
    res = c.post("/api/analyze", json={"script": "JOHN: Hi\nJANE: Hi back"})
    assert res.status_code == 200
    return res.get_json()


def _upload_all(c, png):
    snap = None
    for ch in c.get("/api/state").get_json()["characters"]:
        res = c.post(f"/api/characters/{ch['id']}/reference",
                     data={"file": (io.BytesIO(png()), f"{ch['name']}.png")},
                     content_type="multipart/form-data")
        assert res.status_code == 200
        snap = res.get_json()
    return snap


def test_analyze_moves_to_setup_review(client):
    snap = _analyze(client)
    assert snap["step"] == 2
    assert [c["name"] for c in snap["characters"]] == ["JOHN", "JANE"]
    assert [s["dialogue"] for s in snap["scenes"]] == ["JOHN: Hi", "JANE: Hi back"]
    assert client.fakes[0].api_key == "test-key"


def test_analyze_without_key_is_refused(client, monkeypatch):
    monkeypatch.setattr(server.state, "settings", Settings())
    monkeypatch.setattr("main.API_KEY", None)
    res = client.post("/api/analyze", json={"script": "JOHN: Hi"})
    assert res.status_code == 400
    assert client.fakes == []
    assert server.state.step == server.Step.INPUT


def test_generate_requires_every_reference(client, png):
    _analyze(client)
    assert client.post("/api/generate").status_code == 400
    snap = _upload_all(client, png)
    assert snap["ready"] is True
    assert snap["characters"][0]["reference"].startswith("data:image/png;base64,")


def test_full_wizard_run(client, png):
    _analyze(client)
    client.patch("/api/scenes/scene-0", json={"title": "John waves"})
    client.patch("/api/characters/char-0", json={"description": "tall, green coat"})
    _upload_all(client, png)

    res = client.post("/api/generate")
    assert res.status_code == 202
    snap = _wait(client)
    assert snap["step"] == 3
    assert snap["busy"] is False
    assert [len(s["images"]) for s in snap["scenes"]] == [2, 2]

    prompt = client.fakes[-1].image_calls[0][0]
    assert "Scene Description: John waves" in prompt
    assert "- JOHN: tall, green coat" in prompt

    snap = client.post("/api/scenes/scene-1/select", json={"slot": 1}).get_json()
    assert snap["scenes"][1]["selected"] == 1
    chosen = server.state.scenes[1].generated_images[1].raw_bytes()

    res = client.get("/api/export")
    assert res.status_code == 200
    with zipfile.ZipFile(io.BytesIO(res.data)) as zf:
        assert zf.namelist() == ["scene_2_selected.png"]
        assert zf.read("scene_2_selected.png") == chosen

    res = client.get("/api/scenes/scene-0/images/0")
    assert res.status_code == 200
    assert "scene_1_A.png" in res.headers["Content-Disposition"]


def test_regenerate_only_touches_one_scene(client, png):
    _analyze(client)
    _upload_all(client, png)
    client.post("/api/generate")
    _wait(client)
    client.post("/api/scenes/scene-0/select", json={"slot": 0})
    client.post("/api/scenes/scene-1/select", json={"slot": 0})
    other_before = server.state.scenes[1]
    first_before = server.state.scenes[0]

    res = client.post("/api/scenes/scene-0/regenerate", json={"additional_prompt": "sunset sky"})
    assert res.status_code == 202
    snap = _wait(client)
    assert server.state.scenes[1] == other_before
    assert server.state.scenes[0].selected_image is None
    assert server.state.scenes[0].generated_images != first_before.generated_images
    assert snap["scenes"][1]["selected"] == 0
    assert "Additional Instructions: sunset sky" in client.fakes[-1].image_calls[0][0]


def test_selecting_empty_slot_is_rejected(client, png):
    _analyze(client)
    _upload_all(client, png)
    client.post("/api/generate")
    _wait(client)
    server.state.scenes[0] = server.state.scenes[0].model_copy(update={"generated_images": [None, None]})
    assert client.post("/api/scenes/scene-0/select", json={"slot": 0}).status_code == 400
    assert client.post("/api/scenes/scene-0/select", json={"slot": 5}).status_code == 400
    assert client.post("/api/scenes/nope/select", json={"slot": 0}).status_code == 404


def test_actions_out_of_step_are_refused(client):
    assert client.post("/api/generate").status_code == 409
    assert client.post("/api/scenes/scene-0/regenerate", json={}).status_code == 409
    assert client.post("/api/scenes/scene-0/select", json={"slot": 0}).status_code == 409
    _analyze(client)
    assert client.post("/api/analyze", json={"script": "X: y"}).status_code == 409


def test_busy_state_refuses_a_second_run(client, png):
    _analyze(client)
    _upload_all(client, png)
    server.state.begin("working")
    assert client.post("/api/generate").status_code == 409
    assert client.post("/api/reset").status_code == 409
    server.state.finish()


def test_reset_clears_everything(client):
    _analyze(client)
    snap = client.post("/api/reset").get_json()
    assert snap["step"] == 1
    assert snap["script"] == "" and snap["characters"] == [] and snap["scenes"] == []
    assert snap["error"] is None


def test_upload_validation(client, huge_png):
    _analyze(client)
    res = client.post("/api/characters/char-0/reference",
                      data={"file": (io.BytesIO(b"plain text"), "notes.txt")},
                      content_type="multipart/form-data")
    assert res.status_code == 400
    big = io.BytesIO(b"\0" * (server.MAX_REFERENCE_BYTES + 512 * 1024))
    res = client.post("/api/characters/char-0/reference", data={"file": (big, "big.png")},
                      content_type="multipart/form-data")
    assert res.status_code == 413
    assert res.get_json()["error"] == "Images must not exceed 2MB."
    res = client.post("/api/characters/char-0/reference", data={"file": (io.BytesIO(huge_png), "huge.png")},
                      content_type="multipart/form-data")
    assert res.status_code == 400
    assert server.state.characters[0].reference_image is None


def test_oversized_script_gets_generic_message(client):
    script = "JOHN: " + "x" * (server.MAX_REFERENCE_BYTES + 512 * 1024)
    res = client.post("/api/analyze", json={"script": script})
    assert res.status_code == 413
    assert res.get_json()["error"] == "Request is too large."
    assert client.fakes == []


def test_settings_round_trip(client, tmp_path):
    res = client.post("/api/settings", json={"api_key": "new-key", "image_count": 1})
    assert res.status_code == 200
    stored = server.SettingsStore(tmp_path / "settings.json").load()
    assert stored.api_key == "new-key" and stored.image_count == 1
    body = client.get("/api/settings").get_json()
    assert body == {"api_key_set": True, "api_key_source": "settings", "image_count": 1}
    assert "new-key" not in str(body)
    assert client.post("/api/settings", json={"image_count": 3}).status_code == 400


def test_generation_respects_image_count(client, png):
    client.post("/api/settings", json={"image_count": 1})
    _analyze(client)
    _upload_all(client, png)
    client.post("/api/generate")
    snap = _wait(client)
    assert [len(s["images"]) for s in snap["scenes"]] == [1, 1]


def test_blank_key_removes_saved_key(client, tmp_path, monkeypatch):
    monkeypatch.setattr(server, "API_KEY", "env-key")
    client.post("/api/settings", json={"api_key": "saved-key"})
    assert client.get("/api/settings").get_json()["api_key_source"] == "settings"

    res = client.post("/api/settings", json={"api_key": ""})
    assert res.status_code == 200
    assert server.SettingsStore(tmp_path / "settings.json").load().api_key is None
    body = client.get("/api/settings").get_json()
    assert body["api_key_source"] == "environment" and body["api_key_set"] is True
