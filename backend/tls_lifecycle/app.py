"""Minimal REST application served on the node's HTTPS endpoint."""
from fastapi import FastAPI

from .routes import router as tls_router


def create_app() -> FastAPI:
    app = FastAPI(title="LP node", docs_url=None, redoc_url=None)
    app.include_router(tls_router)

    @app.get("/api/health")
    async def health():
        return {"status": "healthy"}

    return app
