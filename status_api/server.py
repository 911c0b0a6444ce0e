from __future__ import annotations

import os

import uvicorn

from health_checks.main import configure_logging
from status_api.app import create_app
from status_api.settings import StatusSettings


def main() -> None:
    host = os.getenv("HEALTH_API_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("HEALTH_API_PORT", "3333"))
    log_level = os.getenv("LOG_LEVEL", "INFO")
    configure_logging(log_level)
    settings = StatusSettings()
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
