"""HTTP API for Grocery Inventory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from . import __version__
from .errors import (
    JobNotFoundError,
    PreconditionError,
    UploadNotFoundError,
    UploadTooLargeError,
)
from .item_normalizer import format_timestamp, utc_now
from .models import InventoryActionType
from .paths import ingestion_job_path
from .search import SearchConfig
from .services import Services

logger = logging.getLogger(__name__)

BASIC_PARSER_MESSAGE = "Using basic parser. Configure OPENAI_API_KEY for better results."
REVIEW_WARNING = "Review recommended before applying updates."


class ApiError(Exception):
    """Raised by handlers to produce an ``{error, message}`` response."""

    def __init__(self, status_code: int, error: str, message: str):
        self.status_code = status_code
        self.error = error
        self.message = message
        super().__init__(message)


def bad_request(message: str) -> ApiError:
    return ApiError(400, "Bad Request", message)


def not_found(message: str) -> ApiError:
    return ApiError(404, "Not Found", message)


# Request bodies. Fields are loosely typed so type errors get the
# endpoint's own message instead of a generic validation error.


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UpdatesRequest(_Body):
    updates: Any = None


class ParseRequest(_Body):
    text: Any = None
    image: Any = None
    image_type: Any = Field(default=None, alias="imageType")


class IngestRequest(_Body):
    text: Any = None
    metadata: Any = None
    upload_id: Any = Field(default=None, alias="uploadId")


class AgentIngestRequest(_Body):
    text: Any = None
    metadata: Any = None


class UploadRequest(_Body):
    filename: Any = None
    content_type: Any = Field(default=None, alias="contentType")
    size_bytes: Any = Field(default=None, alias="sizeBytes")
    source_type: Any = Field(default=None, alias="sourceType")


def _split_data_url(image: str) -> tuple[str, str]:
    """Return (base64 payload, mime type) for a raw or data-URL image."""
    if image.startswith("data:") and "," in image:
        header, payload = image.split(",", 1)
        mime_type = header[5:].split(";", 1)[0] or "image/jpeg"
        return payload, mime_type
    return image, "image/jpeg"


def create_app(services: Services) -> FastAPI:
    """Create the FastAPI application over a service container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        # Let in-flight jobs reach a terminal state before the workers stop
        await run_in_threadpool(services.shutdown)

    app = FastAPI(title="Grocery Inventory", version=__version__, lifespan=lifespan)

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.error, "message": exc.message}
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": "Bad Request", "message": message})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500, content={"error": "Internal Server Error", "message": str(exc)}
        )

    def current_user(request: Request) -> str:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            raise ApiError(401, "Unauthorized", "Missing or invalid authorization header")
        uid = services.token_verifier.verify(header[len("Bearer "):].strip())
        if not uid:
            raise ApiError(401, "Unauthorized", "Invalid token")
        return uid

    User = Annotated[str, Depends(current_user)]

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "healthy", "timestamp": format_timestamp(utc_now())}

    # Inventory

    @app.get("/inventory")
    def list_inventory(
        uid: User,
        category: str | None = None,
        location: str | None = None,
        low_stock_only: Annotated[str | None, Query(alias="lowStockOnly")] = None,
        search: str | None = None,
        fuzzy: bool = True,
    ) -> dict[str, Any]:
        items = services.engine.list_inventory(
            uid,
            search=SearchConfig(query=search, fuzzy=fuzzy) if search else None,
            category=category,
            location=location,
            low_stock_only=low_stock_only == "true",
        )
        return {"success": True, "items": [i.to_document() for i in items], "count": len(items)}

    @app.get("/inventory/low-stock")
    def low_stock(uid: User) -> dict[str, Any]:
        items = services.engine.get_low_stock(uid)
        return {"success": True, "items": [i.to_document() for i in items], "count": len(items)}

    def apply_updates(uid: str, body: UpdatesRequest, action_type: InventoryActionType) -> dict[str, Any]:
        if not isinstance(body.updates, list):
            raise bad_request("Updates must be an array")
        result = services.engine.apply_inventory_updates_for_user(uid, body.updates, action_type)
        return {"success": True, **result.to_document()}

    @app.post("/inventory/update")
    def update_inventory(uid: User, body: UpdatesRequest) -> dict[str, Any]:
        return apply_updates(uid, body, InventoryActionType.UPDATE)

    @app.post("/inventory/apply")
    def apply_inventory(uid: User, body: UpdatesRequest) -> dict[str, Any]:
        return apply_updates(uid, body, InventoryActionType.APPLY)

    def parse(body: ParseRequest, require: str | None = None) -> dict[str, Any]:
        text, image = body.text, body.image
        if require == "text" and not text:
            raise bad_request("Text field is required")
        if require == "image" and not image:
            raise bad_request("Image field is required")
        if not text and not image:
            raise bad_request("Either text or image field is required")
        if text and image:
            raise bad_request("Provide either text or image, not both")
        if text and not isinstance(text, str):
            raise bad_request("Text field must be a string")
        if image and not isinstance(image, str):
            raise bad_request("Image field must be a base64 encoded string")

        parser = services.parser_factory()
        if not parser.has_api_key:
            if not text:
                raise ApiError(
                    500,
                    "Configuration Error",
                    "Image processing requires OpenAI API key to be configured",
                )
            logger.warning("OpenAI API key not configured, using fallback parser")
            result = parser.parse_grocery_text(text)
            warnings = [BASIC_PARSER_MESSAGE]
            if result.needs_review:
                warnings.append(REVIEW_WARNING)
            if result.error:
                warnings.append(result.error)
            return {
                "success": True,
                "updates": [u.to_document(exclude_none=True) for u in parser.validate_items(result.items)],
                "confidence": result.confidence,
                "warnings": " ".join(warnings),
                "usedFallback": True,
                "originalText": result.original_text,
                "needsReview": result.needs_review,
                "message": BASIC_PARSER_MESSAGE,
            }

        if text:
            result = parser.parse_grocery_text(text)
        else:
            payload, mime_type = _split_data_url(image)
            image_type = body.image_type if body.image_type in ("receipt", "list") else "receipt"
            result = parser.parse_grocery_image(payload, image_type, mime_type)

        warnings = []
        if result.needs_review:
            warnings.append(REVIEW_WARNING)
        if result.error:
            warnings.append(result.error)

        if result.error:
            message = "Parsed using fallback method. Please review carefully."
        elif result.needs_review:
            message = "Text parsed successfully. Please review the items before confirming."
        else:
            message = "Text parsed successfully with high confidence."

        response: dict[str, Any] = {
            "success": True,
            "updates": [u.to_document(exclude_none=True) for u in parser.validate_items(result.items)],
            "confidence": result.confidence,
            "usedFallback": bool(result.error),
            "originalText": result.original_text,
            "needsReview": result.needs_review,
            "message": message,
        }
        if warnings:
            response["warnings"] = " ".join(warnings)
        return response

    @app.post("/inventory/parse")
    def parse_any(uid: User, body: ParseRequest) -> dict[str, Any]:
        return parse(body)

    @app.post("/inventory/parse/text")
    def parse_text(uid: User, body: ParseRequest) -> dict[str, Any]:
        return parse(body, require="text")

    @app.post("/inventory/parse/image")
    def parse_image(uid: User, body: ParseRequest) -> dict[str, Any]:
        return parse(body, require="image")

    # Ingestion

    @app.post("/inventory/ingest")
    def ingest(uid: User, body: IngestRequest) -> dict[str, Any]:
        if body.text is not None and not isinstance(body.text, str):
            raise bad_request("Text field must be a string")
        if body.metadata is not None and not isinstance(body.metadata, dict):
            raise bad_request("Metadata must be an object")
        if body.upload_id is not None and not isinstance(body.upload_id, str):
            raise bad_request("uploadId must be a string")

        if body.upload_id:
            try:
                services.uploads.get_upload(uid, body.upload_id)
            except UploadNotFoundError as e:
                raise not_found(str(e)) from e

        try:
            job = services.ingestion_jobs.create_job(
                uid, text=body.text, metadata=body.metadata, upload_id=body.upload_id or None
            )
        except ValueError as e:
            raise bad_request(str(e)) from e

        return {
            "success": True,
            "jobId": job.id,
            "status": "pending",
            "jobPath": ingestion_job_path(uid, job.id or ""),
        }

    @app.get("/inventory/ingest/{job_id}")
    def ingestion_job(uid: User, job_id: str) -> dict[str, Any]:
        try:
            job = services.ingestion_jobs.get_job(uid, job_id)
        except JobNotFoundError as e:
            raise not_found(str(e)) from e
        return {"success": True, "job": job.to_document()}

    @app.post("/agent/ingest")
    def agent_ingest(uid: User, body: AgentIngestRequest) -> dict[str, Any]:
        if not isinstance(body.text, str) or not body.text.strip():
            raise bad_request("Text is required")
        if body.metadata is not None and not isinstance(body.metadata, dict):
            raise bad_request("Metadata must be an object")

        result = services.pipeline.execute(uid, body.text, body.metadata)
        if not result.success:
            raise ApiError(500, "Agent Error", result.error or result.summary or "Agent run failed")

        return {
            "success": True,
            "response": result.agent_response,
            "summary": result.summary,
            "usedFallback": result.used_fallback,
            "toolInvocations": [inv.to_document() for inv in result.tool_invocations],
            "fallbackDetails": result.fallback_details.to_document() if result.fallback_details else None,
        }

    @app.get("/agent/metrics")
    def agent_metrics(uid: User, day: str | None = None) -> dict[str, Any]:
        aggregator = services.metrics_aggregator
        metrics = aggregator.get_daily_metrics(day) if day else aggregator.get_global_metrics()
        return {"success": True, "metrics": metrics.summary()}

    # Uploads

    @app.post("/uploads")
    def create_upload(uid: User, body: UploadRequest) -> dict[str, Any]:
        if not isinstance(body.filename, str) or not isinstance(body.content_type, str):
            raise bad_request("filename and contentType are required")
        size = body.size_bytes
        if size is not None and (isinstance(size, bool) or not isinstance(size, int)):
            raise bad_request("sizeBytes must be a non-negative integer")
        try:
            reservation = services.uploads.create_upload(
                uid, body.filename, body.content_type, size, body.source_type or None
            )
        except UploadTooLargeError as e:
            raise bad_request(str(e)) from e
        except ValueError as e:
            raise bad_request(str(e)) from e
        return {"success": True, **reservation.to_document()}

    @app.get("/uploads/{upload_id}")
    def get_upload(uid: User, upload_id: str) -> dict[str, Any]:
        try:
            upload = services.uploads.get_upload(uid, upload_id)
        except UploadNotFoundError as e:
            raise not_found(str(e)) from e
        return {"success": True, "upload": upload.to_document()}

    @app.post("/uploads/{upload_id}/queue")
    def queue_upload(uid: User, upload_id: str) -> dict[str, Any]:
        try:
            job = services.uploads.queue_upload(uid, upload_id)
        except UploadNotFoundError as e:
            raise not_found(str(e)) from e
        except PreconditionError as e:
            raise bad_request(str(e)) from e
        return {"success": True, "uploadId": upload_id, "jobId": job.id, "status": "queued"}

    @app.put("/storage/{storage_path:path}")
    async def write_blob(
        request: Request,
        storage_path: str,
        expires: int = 0,
        signature: str = "",
    ) -> dict[str, Any]:
        blobs = services.blob_storage
        if not blobs.verify_signature(storage_path, expires, signature):
            raise ApiError(403, "Forbidden", "Invalid or expired upload signature")

        data = await request.body()
        if len(data) > services.uploads.max_bytes:
            raise bad_request(str(UploadTooLargeError(len(data), services.uploads.max_bytes)))

        content_type = request.headers.get("Content-Type")
        event = await run_in_threadpool(blobs.write, storage_path, data, content_type)
        return {"success": True, "storagePath": event.storage_path, "size": event.size}

    return app
