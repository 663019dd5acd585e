"""Process entry point: ``ollama-fleet`` or ``python -m ollama_fleet.main``."""
from __future__ import annotations

import sys

import uvicorn

from ollama_fleet.app import create_app
from ollama_fleet.config import load_settings
from ollama_fleet.errors import ConfigError


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    app = create_app(settings)
    uvicorn.run(app, host=settings.bind_host, port=settings.bind_port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
