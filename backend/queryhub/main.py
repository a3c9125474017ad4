from fastapi import FastAPI

from .core.config import settings
from .core.init_db import init_db
from .core.logger import get_logger
from .api.routes_queries import router as queries_router
from .api.routes_uploads import router as uploads_router
from .services.execution_service import shutdown_dispatcher


def create_app() -> FastAPI:
    get_logger("queryhub")

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0"
    )

    @app.on_event("startup")
    def on_startup():
        init_db()

    @app.on_event("shutdown")
    def on_shutdown():
        shutdown_dispatcher()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(queries_router)
    app.include_router(uploads_router)

    return app


app = create_app()
