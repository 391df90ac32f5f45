from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set AUTOPILOT_API_SECRET and the provider/generator secrets, "
                + "or switch PROVIDER_CLIENT_TYPE/GENERATOR_TYPE to stub for local runs."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(router)
    return app


app = create_app()
