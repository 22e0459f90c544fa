import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from orderdesk.config import settings
from orderdesk.errors import InvalidOrder, InvalidTransition, OrderDeskError, OrderNotFound, StorageFailure, VersionConflict
from orderdesk.metrics import get_metrics_bytes, get_metrics_content_type
from orderdesk.routes import admin, orders
from orderdesk.storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    OrderNotFound: 404,
    InvalidTransition: 400,
    InvalidOrder: 400,
    VersionConflict: 409,
    StorageFailure: 503,
}


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


async def open_storage() -> Storage:
    if settings.storage_backend == "memory":
        logger.info("Using in-memory storage")
        return InMemoryStorage()
    from orderdesk.db import PostgresStorage
    return await PostgresStorage.connect()


async def handle_order_error(request: Request, exc: OrderDeskError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": str(exc)})


def create_app(storage: Storage | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = storage is None
        app.state.storage = await open_storage() if owned else storage
        yield
        if owned:
            await app.state.storage.close()

    app = FastAPI(title="Order Desk", lifespan=lifespan)
    app.add_exception_handler(OrderDeskError, handle_order_error)
    app.include_router(orders.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: orders placed, transitions applied/rejected, conflicts, payments."""
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


configure_logging()
app = create_app()


def main() -> None:
    import uvicorn
    uvicorn.run("orderdesk.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
