import os
from collections.abc import Callable, Mapping
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: Mapping[str, Callable[[], Any]] | None = None,
):
    """
    Mount GET /health. Each entry in ``checks`` is called on every probe;
    a check that raises marks the service as degraded (HTTP 503) while
    whatever it returned otherwise is reported under its name.
    """

    @app.get("/health")
    def _health():
        body: dict[str, Any] = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        degraded = False
        for name, check in (checks or {}).items():
            try:
                body[name] = check()
            except Exception as e:
                degraded = True
                body[name] = {"error": type(e).__name__}
        if degraded:
            body["status"] = "degraded"
            return JSONResponse(status_code=503, content=body)
        return body
