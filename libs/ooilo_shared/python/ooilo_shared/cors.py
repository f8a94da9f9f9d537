from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware

# Expo dev server defaults for the waitstaff app.
_DEV_ORIGINS = ["http://localhost:8081", "http://127.0.0.1:8081", "http://localhost:19006"]


def configure_cors(app, allowed: str | None):
    origins = [o.strip() for o in (allowed or "").split(",") if o.strip()] or list(_DEV_ORIGINS)
    # Credentials are never combined with a wildcard origin.
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
