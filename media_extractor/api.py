"""HTTP surface for the file processing queue."""
import hmac
from typing import List, Optional

import psycopg2
from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from media_extractor import settings
from media_extractor.errors import ItemBusy, ItemNotFound, StoreUnavailable
from media_extractor.logging_conf import logger
from media_extractor.queue.models import MESSAGING
from media_extractor.queue_service import QueueService


class EnqueueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    webhook_ids: List[str] = Field(alias="webhookIds")
    source: str = MESSAGING
    attachment_index: Optional[int] = Field(default=None, alias="attachmentIndex")


def _check_cron_secret(authorization: Optional[str]) -> None:
    if not settings.CRON_SECRET:
        return
    expected = f"Bearer {settings.CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def build_router(service: QueueService) -> APIRouter:
    router = APIRouter(prefix="/api/files", tags=["files"])

    @router.post("/enqueue")
    def enqueue(body: EnqueueRequest):
        if not body.webhook_ids:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="webhookIds must not be empty")
        return {"results": service.enqueue(body.webhook_ids, body.source, body.attachment_index)}

    @router.post("/process-next")
    def process_next():
        return service.process_next()

    @router.post("/process/{item_id}")
    def process_item(item_id: str):
        return service.process_item(item_id)

    @router.post("/retry/{item_id}")
    def retry(item_id: str):
        return service.retry(item_id)

    @router.delete("/queue/{item_id}")
    def remove(item_id: str):
        return service.remove(item_id)

    @router.get("/queue")
    def list_queue(
        status_filter: Optional[str] = Query(default=None, alias="status"),
        media_type: Optional[str] = Query(default=None, alias="type"),
        limit: int = Query(default=200, ge=1, le=1000),
    ):
        return service.list_queue(status=status_filter, media_type=media_type, limit=limit)

    @router.get("/queue-keys")
    def queue_keys():
        return service.queue_keys()

    @router.get("/webhook-raw/{queue_id}")
    def webhook_raw(queue_id: str):
        return service.webhook_raw(queue_id)

    @router.get("/extracted-texts")
    def extracted_texts(phone: str = ""):
        if not phone.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="phone is required")
        return service.extracted_texts(phone.strip())

    @router.get("/health")
    def health():
        return {"status": "ok"}

    @router.post("/cron/process-queue")
    def cron_process_queue(authorization: Optional[str] = Header(default=None)):
        _check_cron_secret(authorization)
        return service.scheduler.run_cron()

    return router


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ItemNotFound)
    async def not_found(request: Request, exc: ItemNotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc)})

    @app.exception_handler(ItemBusy)
    async def busy(request: Request, exc: ItemBusy):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"error": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(f"{request.method} {request.url.path}: store unavailable: {exc}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content={"error": "Document store unavailable", "details": str(exc)})

    @app.exception_handler(psycopg2.Error)
    async def database_error(request: Request, exc: psycopg2.Error):
        logger.error(f"{request.method} {request.url.path}: database error: {exc}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content={"error": "Database error", "details": str(exc)})


def create_app(service: QueueService) -> FastAPI:
    """FastAPI app serving the queue operations of `service`."""
    app = FastAPI(title="Media Extractor")
    app.include_router(build_router(service))
    add_exception_handlers(app)

    return app
