"""HTTP client wrapper for submitting prompt workflows to ComfyUI."""

import copy
import json
import logging
import random
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

MAX_SEED = 1125899906842624

TEXT_ENCODE_NODE = "CLIPTextEncode"
SAMPLER_NODE = "KSampler"


class GenerationError(Exception):
    """Base class for failures while handing a prompt to ComfyUI."""
    pass


class WorkflowTemplateError(GenerationError):
    """Raised when the workflow template is missing or unparsable."""
    pass


class ComfyConnectionError(GenerationError):
    """Raised when unable to connect to ComfyUI instance."""
    pass


class ComfyResponseError(GenerationError):
    """Raised when ComfyUI returns an error response."""
    pass


def _apply_to_ui_export(workflow: dict, prompt_text: str, steps: int, cfg: float, rng: random.Random) -> int:
    # Exported UI workflows keep widget values positionally:
    # CLIPTextEncode: [text]
    # KSampler: [seed, control_after_generate, steps, cfg, sampler_name, scheduler, denoise]
    text_nodes = 0
    for node in workflow.get("nodes") or []:
        if not isinstance(node, dict):
            continue
        node_type = node.get("type")
        if node_type == TEXT_ENCODE_NODE:
            # Exported workflows carry a trailing newline on prompt text
            value = f"{prompt_text}\n"
            widgets = node.get("widgets_values")
            if not isinstance(widgets, list) or not widgets:
                node["widgets_values"] = [value]
            else:
                widgets[0] = value
            text_nodes += 1
        elif node_type == SAMPLER_NODE:
            widgets = node.get("widgets_values")
            if not isinstance(widgets, list):
                widgets = []
                node["widgets_values"] = widgets
            while len(widgets) < 4:
                widgets.append(None)
            widgets[0] = rng.randint(1, MAX_SEED)
            widgets[2] = steps
            widgets[3] = cfg
    return text_nodes


def _apply_to_api_graph(graph: dict, prompt_text: str, steps: int, cfg: float, rng: random.Random) -> int:
    text_nodes = 0
    for node in graph.values():
        if not isinstance(node, dict):
            continue
        inputs = node.setdefault("inputs", {})
        class_type = node.get("class_type")
        if class_type == TEXT_ENCODE_NODE:
            inputs["text"] = prompt_text
            text_nodes += 1
        elif class_type == SAMPLER_NODE:
            inputs["seed"] = rng.randint(1, MAX_SEED)
            inputs["steps"] = steps
            inputs["cfg"] = cfg
    return text_nodes


def prepare_workflow(
    template: Dict[str, Any],
    prompt_text: str,
    steps: int,
    cfg: float,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """
    Build a request graph from the template.

    Every text-encode node receives the prompt; every sampler node gets its
    own fresh seed plus the fixed step count and guidance scale. Both the UI
    export shape ({"nodes": [...]}) and the API shape ({id: {class_type,
    inputs}}) are supported. The template itself is never modified.
    """
    rng = rng or random.Random()
    workflow = copy.deepcopy(template)

    if isinstance(workflow.get("nodes"), list):
        text_nodes = _apply_to_ui_export(workflow, prompt_text, steps, cfg, rng)
    else:
        text_nodes = _apply_to_api_graph(workflow, prompt_text, steps, cfg, rng)

    if not text_nodes:
        logger.warning("No %s nodes found in workflow to set prompt.", TEXT_ENCODE_NODE)
    return workflow


class ComfyClient:
    """Stateless adapter that hands a single prompt to ComfyUI's /prompt endpoint."""

    def __init__(
        self,
        base_url: str,
        workflow_path: Path,
        *,
        timeout: float = 30.0,
        steps: int = 20,
        cfg: float = 7.5,
        debug_path: Optional[Path] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.workflow_path = Path(workflow_path)
        self.timeout = timeout
        self.steps = steps
        self.cfg = cfg
        self.debug_path = Path(debug_path) if debug_path else None
        # ComfyUI pairs queue entries with a client id; generate once per client.
        self.client_id = str(uuid.uuid4())
        self._transport = transport
        self._rng = random.Random()

    def _get_url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _http(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def load_template(self) -> Dict[str, Any]:
        if not self.workflow_path.is_file():
            raise WorkflowTemplateError(f"Workflow JSON not found at {self.workflow_path}")
        try:
            data = json.loads(self.workflow_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WorkflowTemplateError(f"Could not parse workflow JSON at {self.workflow_path}: {e}") from e
        if not isinstance(data, dict):
            raise WorkflowTemplateError(f"Workflow JSON at {self.workflow_path} must be an object")
        return data

    def _dump_debug(self, workflow: Dict[str, Any]) -> None:
        if not self.debug_path:
            return
        try:
            self.debug_path.parent.mkdir(parents=True, exist_ok=True)
            self.debug_path.write_text(json.dumps(workflow, indent=2), encoding="utf-8")
            logger.debug("Saved prepared workflow for inspection: %s", self.debug_path)
        except OSError as e:
            logger.warning("Could not write debug workflow file: %s", e)

    def submit(self, prompt_text: str) -> Optional[str]:
        """
        Submit a prompt to ComfyUI.

        Returns the prompt_id reported by ComfyUI (None if absent). ComfyUI
        only acknowledges the request; the image shows up in its output
        directory later.
        """
        workflow = prepare_workflow(self.load_template(), prompt_text, self.steps, self.cfg, self._rng)
        self._dump_debug(workflow)

        payload = {"prompt": workflow, "client_id": self.client_id}
        try:
            with self._http() as client:
                response = client.post(self._get_url("/prompt"), json=payload)
        except httpx.TimeoutException as e:
            raise ComfyConnectionError(
                f"Timed out after {self.timeout:g}s sending workflow to ComfyUI at {self.base_url}"
            ) from e
        except httpx.HTTPError as e:
            raise ComfyConnectionError(f"Could not connect to ComfyUI at {self.base_url}. Is it running? ({e})") from e

        if not response.is_success:
            raise ComfyResponseError(f"ComfyUI Error {response.status_code}: {response.text}")

        try:
            prompt_id = response.json().get("prompt_id")
        except (ValueError, AttributeError):
            prompt_id = None

        logger.info("ComfyUI accepted workflow for prompt %r (prompt_id=%s)", prompt_text, prompt_id)
        return prompt_id

    def get_system_stats(self) -> Dict[str, Any]:
        """Retrieve system stats including version info from ComfyUI."""
        try:
            with httpx.Client(timeout=5.0, transport=self._transport) as client:
                response = client.get(self._get_url("/system_stats"))
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ComfyConnectionError(f"Could not retrieve system stats from {self.base_url}") from e

    def check_health(self) -> bool:
        """Lightweight check to see if ComfyUI is reachable."""
        try:
            self.get_system_stats()
            return True
        except ComfyConnectionError:
            return False
