"""
Startup script rendered into every provisioned instance's metadata.

The template installs Docker, starts the ``ollama/ollama`` container, pulls
one model and launches the inactivity watchdog. Its only parameter is the
model name. The watchdog timings below are a compatibility contract with
instances already running: changing them in the template is a breaking change.
"""
from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from ollama_fleet.errors import BadRequestError
from ollama_fleet.naming import is_valid_model_name

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
TEMPLATE_NAME = "startup-script.sh.j2"

WATCHDOG_POLL_INTERVAL_S = 60
WATCHDOG_IDLE_THRESHOLD_S = 900

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def render_startup_script(model_name: str) -> str:
    """
    Render the startup script for ``model_name``.

    The name is substituted into a script that runs as root, so anything that
    is not a plain Ollama model reference is refused with a 400 before any
    instance is created.
    """
    if not is_valid_model_name(model_name):
        raise BadRequestError(f"Invalid modelName: {model_name!r}")
    return _env.get_template(TEMPLATE_NAME).render(model_name=model_name)
