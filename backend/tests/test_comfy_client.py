import json
import random

import httpx
import pytest

from comfy_batch.core import comfy_client as cc


UI_EXPORT = {
    "nodes": [
        {"id": 6, "type": "CLIPTextEncode", "widgets_values": ["old prompt"]},
        {"id": 7, "type": "CLIPTextEncode"},
        {"id": 3, "type": "KSampler", "widgets_values": [1, "randomize", 30, 8.0, "euler", "normal", 1]},
        {"id": 4, "type": "KSampler", "widgets_values": [2, "fixed", 30, 8.0, "euler", "normal", 1]},
        {"id": 9, "type": "SaveImage", "widgets_values": ["ComfyUI"]},
    ]
}

API_GRAPH = {
    "3": {"class_type": "KSampler", "inputs": {"seed": 0, "steps": 1, "cfg": 1.0, "model": ["4", 0]}},
    "6": {"class_type": "CLIPTextEncode", "inputs": {"text": "", "clip": ["4", 1]}},
    "9": {"class_type": "SaveImage", "inputs": {"filename_prefix": "ComfyUI"}},
}


@pytest.fixture()
def workflow_file(tmp_path):
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(API_GRAPH), encoding="utf-8")
    return path


def _client(workflow_file, handler, **kwargs):
    return cc.ComfyClient(
        "http://comfy.test:8188/",
        workflow_file,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_prepare_ui_export_sets_prompt_and_sampler_values():
    workflow = cc.prepare_workflow(UI_EXPORT, "a red fox", steps=20, cfg=7.5, rng=random.Random(1))

    text_nodes = [n for n in workflow["nodes"] if n["type"] == "CLIPTextEncode"]
    samplers = [n for n in workflow["nodes"] if n["type"] == "KSampler"]

    assert [n["widgets_values"][0] for n in text_nodes] == ["a red fox\n", "a red fox\n"]
    for node in samplers:
        assert 1 <= node["widgets_values"][0] <= cc.MAX_SEED
        assert node["widgets_values"][2] == 20
        assert node["widgets_values"][3] == 7.5
        # Untouched sampler settings survive
        assert node["widgets_values"][4] == "euler"
    assert samplers[0]["widgets_values"][0] != samplers[1]["widgets_values"][0]


def test_prepare_does_not_mutate_template():
    before = json.dumps(UI_EXPORT, sort_keys=True)

    cc.prepare_workflow(UI_EXPORT, "anything", steps=20, cfg=7.5)

    assert json.dumps(UI_EXPORT, sort_keys=True) == before


def test_prepare_api_graph_sets_inputs():
    workflow = cc.prepare_workflow(API_GRAPH, "a castle", steps=12, cfg=5.0, rng=random.Random(3))

    assert workflow["6"]["inputs"]["text"] == "a castle"
    assert workflow["3"]["inputs"]["steps"] == 12
    assert workflow["3"]["inputs"]["cfg"] == 5.0
    assert workflow["3"]["inputs"]["seed"] >= 1
    assert workflow["3"]["inputs"]["model"] == ["4", 0]


def test_prepare_fills_short_sampler_widgets():
    template = {"nodes": [{"type": "KSampler"}, {"type": "CLIPTextEncode", "widgets_values": []}]}

    workflow = cc.prepare_workflow(template, "p", steps=20, cfg=7.5)

    sampler, text = workflow["nodes"]
    assert len(sampler["widgets_values"]) == 4
    assert sampler["widgets_values"][2:4] == [20, 7.5]
    assert text["widgets_values"] == ["p\n"]


def test_submit_posts_prepared_workflow(workflow_file):
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"prompt_id": "abc", "number": 1})

    client = _client(workflow_file, handler, steps=25, cfg=6.0)

    assert client.submit("a lighthouse at dusk") == "abc"
    assert captured["url"] == "http://comfy.test:8188/prompt"
    assert captured["body"]["client_id"] == client.client_id
    graph = captured["body"]["prompt"]
    assert graph["6"]["inputs"]["text"] == "a lighthouse at dusk"
    assert graph["3"]["inputs"]["steps"] == 25
    assert graph["3"]["inputs"]["cfg"] == 6.0


def test_submit_rerolls_seed_each_time(workflow_file):
    seeds = []

    def handler(request):
        seeds.append(json.loads(request.content)["prompt"]["3"]["inputs"]["seed"])
        return httpx.Response(200, json={"prompt_id": str(len(seeds))})

    client = _client(workflow_file, handler)
    for _ in range(3):
        client.submit("same prompt")

    assert len(set(seeds)) == 3


def test_submit_non_success_status_raises_response_error(workflow_file):
    client = _client(workflow_file, lambda request: httpx.Response(400, text="invalid prompt"))

    with pytest.raises(cc.ComfyResponseError) as excinfo:
        client.submit("x")

    assert "400" in str(excinfo.value)
    assert "invalid prompt" in str(excinfo.value)


def test_submit_connection_failure_raises_connection_error(workflow_file):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(cc.ComfyConnectionError):
        _client(workflow_file, handler).submit("x")


def test_submit_timeout_raises_connection_error(workflow_file):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(cc.ComfyConnectionError) as excinfo:
        _client(workflow_file, handler, timeout=30).submit("x")

    assert "Timed out after 30s" in str(excinfo.value)


def test_missing_template_is_a_generation_error(tmp_path):
    client = _client(tmp_path / "nope.json", lambda request: pytest.fail("should not send"))

    with pytest.raises(cc.WorkflowTemplateError) as excinfo:
        client.submit("x")

    assert isinstance(excinfo.value, cc.GenerationError)
    assert "not found" in str(excinfo.value)


def test_unparsable_template_is_a_generation_error(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    client = _client(path, lambda request: pytest.fail("should not send"))

    with pytest.raises(cc.WorkflowTemplateError):
        client.submit("x")


def test_debug_dump_written_before_submission(workflow_file, tmp_path):
    debug_path = tmp_path / "debug" / "last_sent_workflow.json"
    client = _client(
        workflow_file,
        lambda request: httpx.Response(200, json={"prompt_id": "1"}),
        debug_path=debug_path,
    )

    client.submit("dumped prompt")

    dumped = json.loads(debug_path.read_text(encoding="utf-8"))
    assert dumped["6"]["inputs"]["text"] == "dumped prompt"


def test_check_health(workflow_file):
    healthy = _client(workflow_file, lambda request: httpx.Response(200, json={"system": {}}))
    down = _client(workflow_file, lambda request: httpx.Response(503, text="busy"))

    assert healthy.check_health() is True
    assert down.check_health() is False
