"""CLI entry point for Grocery Inventory."""

import base64
import json
import mimetypes
from pathlib import Path
from typing import Annotated

import typer

from .config import ConfigManager, configure_logging
from .errors import ConfigurationError, JobNotFoundError, UploadNotFoundError
from .models import InventoryActionType, UploadSourceType
from .output_formatter import OutputFormatter
from .search import SearchConfig
from .services import Services, build_services
from .text_extractor import extract_text_from_upload, infer_source_type

DEFAULT_USER = "local"

app = typer.Typer(
    name="grocery-inventory",
    help="Turn grocery text and uploaded files into inventory updates",
    no_args_is_help=True,
)

# Global state for formatter and services (set by callback)
formatter: OutputFormatter = OutputFormatter()
services: Services | None = None
user_id: str = DEFAULT_USER


def get_services() -> Services:
    """Get or build the service container."""
    global services
    if services is None:
        services = build_services(ConfigManager(), background_triggers=False)
    return services


@app.callback()
def main(
    json_output: Annotated[
        bool, typer.Option("--json", help="Output as JSON for programmatic use")
    ] = False,
    data_dir: Annotated[Path | None, typer.Option("--data-dir", help="Data directory path")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", help="Path to config.toml")
    ] = None,
    user: Annotated[str, typer.Option("--user", help="Inventory owner id")] = DEFAULT_USER,
) -> None:
    """Grocery Inventory CLI - ingest grocery updates from text and files."""
    global formatter, services, user_id

    formatter = OutputFormatter(json_mode=json_output)
    config = ConfigManager(config_path)
    configure_logging(config.logging.level)

    # CLI --data-dir overrides config, which overrides default.
    # Commands run triggers inline so their work finishes before the process exits.
    services = build_services(config, data_dir=data_dir, background_triggers=False)
    user_id = user


@app.command()
def parse(
    text: Annotated[str | None, typer.Argument(help="Grocery text to parse")] = None,
    image: Annotated[
        Path | None, typer.Option("--image", "-i", help="Receipt or list photo to parse")
    ] = None,
    image_type: Annotated[
        str, typer.Option("--image-type", help="Image kind: receipt or list")
    ] = "receipt",
) -> None:
    """Parse grocery text or an image without applying it."""
    try:
        if bool(text) == bool(image):
            raise ValueError("Provide either text or --image, not both")

        parser = get_services().parser_factory()
        if image:
            if not parser.has_api_key:
                raise ConfigurationError("Image processing requires OpenAI API key to be configured")
            mime_type = mimetypes.guess_type(image.name)[0] or "image/jpeg"
            encoded = base64.b64encode(image.read_bytes()).decode("ascii")
            result = parser.parse_grocery_image(encoded, image_type, mime_type)
        else:
            result = parser.parse_grocery_text(text or "")

        updates = parser.validate_items(result.items)
        output_data = {
            "success": True,
            "data": {
                "updates": [u.to_document(exclude_none=True) for u in updates],
                "confidence": result.confidence,
                "needsReview": result.needs_review,
                "usedFallback": result.used_fallback or bool(result.error),
                "warnings": result.error,
                "originalText": result.original_text,
            },
        }
        formatter.output(output_data, f"Parsed {len(updates)} updates")
    except ConfigurationError as e:
        formatter.error(str(e), error_code="CONFIGURATION_ERROR")
        raise typer.Exit(code=1)
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


@app.command()
def apply(
    data: Annotated[
        str | None, typer.Option("--data", "-d", help="JSON array of updates")
    ] = None,
    file: Annotated[
        Path | None, typer.Option("--file", "-f", help="JSON file of updates")
    ] = None,
) -> None:
    """Apply structured inventory updates."""
    try:
        if bool(data) == bool(file):
            raise ValueError("Provide either --data or --file")

        raw = json.loads(data) if data else json.loads(file.read_text(encoding="utf-8"))  # type: ignore[union-attr]
        updates = raw.get("updates") if isinstance(raw, dict) else raw
        if not isinstance(updates, list):
            raise ValueError("Updates must be an array")

        result = get_services().engine.apply_inventory_updates_for_user(
            user_id, updates, InventoryActionType.APPLY
        )
        output_data = {"success": result.summary.failed == 0, "data": result.to_document()}
        formatter.output(
            output_data,
            f"Applied {result.summary.successful}/{result.summary.total} updates",
        )
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


@app.command()
def ingest(
    text: Annotated[str, typer.Argument(help="Grocery text to ingest")],
    run_async: Annotated[
        bool, typer.Option("--async", help="Submit as an ingestion job")
    ] = False,
) -> None:
    """Ingest grocery text through the agent and fallback parser."""
    try:
        svc = get_services()
        if run_async:
            job = svc.ingestion_jobs.create_job(user_id, text=text, metadata={"source": "cli"})
            job = svc.ingestion_jobs.get_job(user_id, job.id or "")
            formatter.output(
                {"success": True, "data": {"job": job.to_document()}},
                f"Submitted ingestion job {job.id}",
            )
            return

        result = svc.pipeline.execute(user_id, text, {"source": "cli"})
        output_data = {"success": result.success, "data": {"pipeline": result.to_document()}}
        if not result.success:
            formatter.output(output_data)
            formatter.error(result.error or "Ingestion failed", error_code="AGENT_ERROR")
            raise typer.Exit(code=1)
        formatter.output(output_data, "Ingestion complete")
    except typer.Exit:
        raise
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


@app.command()
def extract(
    file: Annotated[Path, typer.Argument(help="File to extract grocery text from")],
    content_type: Annotated[
        str | None, typer.Option("--content-type", help="Override the detected MIME type")
    ] = None,
) -> None:
    """Extract text from a receipt, PDF, spreadsheet or text file."""
    try:
        mime_type = content_type or mimetypes.guess_type(file.name)[0] or "application/octet-stream"
        extraction = extract_text_from_upload(
            file.read_bytes(),
            mime_type,
            infer_source_type(file.name, mime_type),
            filename=file.name,
            parser=get_services().parser_factory(),
        )
        formatter.output(
            {"success": True, "data": {"extraction": extraction.to_document()}},
            f"Extracted {len(extraction.text)} characters",
        )
    except ConfigurationError as e:
        formatter.error(str(e), error_code="CONFIGURATION_ERROR")
        raise typer.Exit(code=1)
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


# Inventory subcommand group
inv_app = typer.Typer(help="Inventory commands")
app.add_typer(inv_app, name="inventory")


@inv_app.command("list")
def inv_list(
    search: Annotated[str | None, typer.Option("--search", "-s", help="Search text")] = None,
    fuzzy: Annotated[bool, typer.Option("--fuzzy/--no-fuzzy", help="Fuzzy search")] = True,
    category: Annotated[
        str | None, typer.Option("--category", "-c", help="Filter by category")
    ] = None,
    location: Annotated[
        str | None, typer.Option("--location", "-l", help="Filter by location")
    ] = None,
    low_stock: Annotated[bool, typer.Option("--low-stock", help="Only low stock items")] = False,
) -> None:
    """View inventory."""
    try:
        items = get_services().engine.list_inventory(
            user_id,
            search=SearchConfig(query=search, fuzzy=fuzzy) if search else None,
            category=category,
            location=location,
            low_stock_only=low_stock,
        )
        output_data = {
            "success": True,
            "data": {"inventory": [i.to_document() for i in items], "count": len(items)},
        }
        formatter.output(output_data, f"{len(items)} items in inventory")
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


# Jobs subcommand group
jobs_app = typer.Typer(help="Ingestion job commands")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("show")
def jobs_show(job_id: Annotated[str, typer.Argument(help="Ingestion job ID")]) -> None:
    """Show an ingestion job."""
    try:
        job = get_services().ingestion_jobs.get_job(user_id, job_id)
        formatter.output({"success": True, "data": {"job": job.to_document()}})
    except JobNotFoundError as e:
        formatter.error(str(e), error_code="JOB_NOT_FOUND")
        raise typer.Exit(code=1)
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


# Uploads subcommand group
uploads_app = typer.Typer(help="Upload commands")
app.add_typer(uploads_app, name="uploads")


@uploads_app.command("add")
def uploads_add(
    file: Annotated[Path, typer.Argument(help="File to upload")],
    content_type: Annotated[
        str | None, typer.Option("--content-type", help="Override the detected MIME type")
    ] = None,
    source_type: Annotated[
        UploadSourceType | None, typer.Option("--source-type", help="Upload source type")
    ] = None,
) -> None:
    """Upload a file and process it into an ingestion job."""
    try:
        svc = get_services()
        data = file.read_bytes()
        mime_type = content_type or mimetypes.guess_type(file.name)[0] or "application/octet-stream"

        reservation = svc.uploads.create_upload(
            user_id, file.name, mime_type, size_bytes=len(data), source_type=source_type
        )
        svc.blob_storage.write(reservation.storage_path, data, mime_type)
        upload = svc.uploads.get_upload(user_id, reservation.upload_id)

        formatter.output(
            {"success": upload.status != "failed", "data": {"upload": upload.to_document()}},
            f"Uploaded {file.name} as {reservation.upload_id}",
        )
        if upload.status == "failed":
            raise typer.Exit(code=1)
    except typer.Exit:
        raise
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


@uploads_app.command("show")
def uploads_show(upload_id: Annotated[str, typer.Argument(help="Upload ID")]) -> None:
    """Show an upload."""
    try:
        upload = get_services().uploads.get_upload(user_id, upload_id)
        formatter.output({"success": True, "data": {"upload": upload.to_document()}})
    except UploadNotFoundError as e:
        formatter.error(str(e), error_code="UPLOAD_NOT_FOUND")
        raise typer.Exit(code=1)
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


@app.command()
def metrics(
    day: Annotated[
        str | None, typer.Option("--day", help="UTC day (YYYY-MM-DD) instead of all time")
    ] = None,
) -> None:
    """Show aggregated agent metrics."""
    try:
        aggregator = get_services().metrics_aggregator
        result = aggregator.get_daily_metrics(day) if day else aggregator.get_global_metrics()
        formatter.output({"success": True, "data": {"metrics": result.summary()}})
    except Exception as e:
        formatter.error(str(e))
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Bind port")] = 8000,
) -> None:
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app

    server_services = get_services()
    if server_services.config.ingestion.background_triggers:
        server_services.start_background_triggers()
    uvicorn.run(create_app(server_services), host=host, port=port)


if __name__ == "__main__":
    app()
