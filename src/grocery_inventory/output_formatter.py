"""Output formatting for CLI and programmatic use."""

import json
from datetime import date, datetime, time
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from rich.console import Console
from rich.panel import Panel
from rich.table import Table


class JSONEncoder(json.JSONEncoder):
    """Custom JSON encoder for output."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, (datetime, date, time)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json", by_alias=True)
        return super().default(obj)


class OutputFormatter:
    """Formats output for both Rich terminal and JSON modes."""

    def __init__(self, json_mode: bool = False):
        """Initialize formatter.

        Args:
            json_mode: If True, output JSON instead of Rich formatting
        """
        self.json_mode = json_mode
        self.console = Console()

    def output(self, data: dict[str, Any], message: str = "") -> None:
        """Output data in appropriate format.

        Args:
            data: Data to output
            message: Optional message for Rich mode
        """
        if self.json_mode:
            self._output_json(data)
        else:
            self._output_rich(data, message)

    def _output_json(self, data: dict[str, Any]) -> None:
        """Output as JSON to stdout."""
        print(json.dumps(data, cls=JSONEncoder, indent=2))

    def _output_rich(self, data: dict[str, Any], message: str) -> None:
        """Output with Rich formatting."""
        if message:
            self.console.print(f"[green]✓[/green] {message}")

        payload = data.get("data", {})
        if "inventory" in payload:
            self._render_inventory(payload["inventory"])
        elif "updates" in payload:
            self._render_parse(payload)
        elif "results" in payload:
            self._render_apply(payload)
        elif "pipeline" in payload:
            self._render_pipeline(payload["pipeline"])
        elif "job" in payload:
            self._render_job(payload["job"])
        elif "upload" in payload:
            self._render_upload(payload["upload"])
        elif "extraction" in payload:
            self._render_extraction(payload["extraction"])
        elif "metrics" in payload:
            self._render_metrics(payload["metrics"])

    def _render_inventory(self, items: list[dict]) -> None:
        """Render inventory items."""
        if not items:
            self.console.print("[dim]Inventory is empty[/dim]")
            return

        table = Table(title="Inventory", show_header=True, header_style="bold cyan")
        table.add_column("Item", style="cyan")
        table.add_column("Qty", style="magenta", justify="right")
        table.add_column("Unit")
        table.add_column("Category", style="yellow")
        table.add_column("Location", style="green")
        table.add_column("Expires")

        for item in items:
            quantity = item.get("quantity", 0)
            low = quantity <= item.get("lowStockThreshold", 1)
            qty_text = f"[red]{quantity:g}[/red]" if low else f"{quantity:g}"
            expires = item.get("expirationDate") or "-"
            table.add_row(
                item["name"],
                qty_text,
                item.get("unit") or "-",
                item.get("category") or "-",
                item.get("location") or "-",
                expires[:10] if expires != "-" else expires,
            )

        self.console.print(table)
        self.console.print(f"\nTotal items: {len(items)}")

    def _render_parse(self, payload: dict) -> None:
        """Render parsed updates with their confidence."""
        updates = payload["updates"]
        if not updates:
            self.console.print("[dim]No grocery updates found[/dim]")
        else:
            table = Table(title="Parsed Updates", show_header=True, header_style="bold cyan")
            table.add_column("Action", style="blue")
            table.add_column("Item", style="cyan")
            table.add_column("Qty", justify="right")
            table.add_column("Unit")
            table.add_column("Category", style="yellow")
            for update in updates:
                table.add_row(
                    update.get("action", "-"),
                    update.get("name", "-"),
                    f"{update.get('quantity', 0):g}",
                    update.get("unit") or "-",
                    update.get("category") or "-",
                )
            self.console.print(table)

        confidence = payload.get("confidence", 0)
        self.console.print(f"Confidence: {confidence:.0%}")
        if payload.get("needsReview"):
            self.console.print("[yellow]Review recommended before applying[/yellow]")
        if payload.get("warnings"):
            self.console.print(f"[yellow]⚠[/yellow] {payload['warnings']}")

    def _render_apply(self, payload: dict) -> None:
        """Render per-item apply results."""
        table = Table(title="Inventory Updates", show_header=True, header_style="bold")
        table.add_column("")
        table.add_column("Item", style="cyan")
        table.add_column("Result")

        for result in payload["results"]:
            if result.get("success"):
                table.add_row("[green]✓[/green]", result["name"], result.get("message") or "")
            else:
                table.add_row("[red]✗[/red]", result["name"], f"[red]{result.get('error')}[/red]")

        self.console.print(table)
        summary = payload.get("summary", {})
        self.console.print(
            f"Applied {summary.get('successful', 0)}/{summary.get('total', 0)} "
            f"({summary.get('failed', 0)} failed)"
        )
        for error in payload.get("validationErrors", []):
            self.console.print(f"  [red]•[/red] {error}")

    def _render_pipeline(self, pipeline: dict) -> None:
        """Render a synchronous ingestion result."""
        border = "green" if pipeline.get("success") else "red"
        lines = [pipeline.get("summary") or pipeline.get("error") or "(no response)"]
        tools = [inv["name"] for inv in pipeline.get("toolInvocations", [])]
        if tools:
            lines.append(f"\n[dim]Tools: {', '.join(tools)}[/dim]")
        if pipeline.get("usedFallback"):
            lines.append("[yellow]Fallback parser was used[/yellow]")
        self.console.print(Panel("\n".join(lines), title="Ingestion", border_style=border))

        details = pipeline.get("fallbackDetails")
        if details:
            self._render_apply(details)

    def _render_job(self, job: dict) -> None:
        """Render an ingestion job."""
        status = job.get("status", "pending")
        color = {"completed": "green", "failed": "red"}.get(status, "yellow")
        lines = [
            f"[bold]Job:[/bold] {job.get('id')}",
            f"[bold]Status:[/bold] [{color}]{status}[/{color}]",
        ]
        if job.get("uploadId"):
            lines.append(f"[bold]Upload:[/bold] {job['uploadId']}")
        if job.get("resultSummary"):
            lines.append(f"\n{job['resultSummary']}")
        if job.get("lastError"):
            lines.append(f"\n[red]{job['lastError']}[/red]")
        if job.get("fallbackApplied"):
            lines.append("[yellow]Fallback parser was used[/yellow]")
        self.console.print(Panel("\n".join(lines), title="Ingestion Job", border_style=color))

    def _render_upload(self, upload: dict) -> None:
        """Render an upload record."""
        status = upload.get("status", "awaiting_upload")
        color = {"completed": "green", "failed": "red"}.get(status, "yellow")
        lines = [
            f"[bold]Upload:[/bold] {upload.get('id') or upload.get('uploadId')}",
            f"[bold]File:[/bold] {upload.get('originalFilename') or upload.get('filename')}",
            f"[bold]Type:[/bold] {upload.get('sourceType', 'unknown')}",
            f"[bold]Status:[/bold] [{color}]{status}[/{color}]",
        ]
        if upload.get("processingStage"):
            lines.append(f"[bold]Stage:[/bold] {upload['processingStage']}")
        if upload.get("ingestionJobId"):
            lines.append(f"[bold]Ingestion job:[/bold] {upload['ingestionJobId']}")
        if upload.get("textPreview"):
            lines.append(f"\n[dim]{upload['textPreview']}[/dim]")
        if upload.get("lastError"):
            lines.append(f"\n[red]{upload['lastError']}[/red]")
        self.console.print(Panel("\n".join(lines), title="Upload", border_style=color))

    def _render_extraction(self, extraction: dict) -> None:
        """Render extracted text."""
        metadata = extraction.get("metadata", {})
        title = f"Extracted text ({metadata.get('extractor', 'unknown')})"
        self.console.print(Panel(extraction.get("text") or "[dim](empty)[/dim]", title=title))

    def _render_metrics(self, metrics: dict) -> None:
        """Render aggregated agent metrics."""
        self.console.print("\n[bold]Agent Metrics[/bold]")
        self.console.print(f"Interactions: {metrics.get('totalCount', 0)}")
        self.console.print(f"Success rate: {metrics.get('successRate', 0):.0%}")
        self.console.print(f"Fallback rate: {metrics.get('fallbackRate', 0):.0%}")
        if metrics.get("averageLatencyMs") is not None:
            self.console.print(f"Average latency: {metrics['averageLatencyMs']:.0f} ms")
        if metrics.get("averageConfidence") is not None:
            self.console.print(f"Average confidence: {metrics['averageConfidence']:.2f}")

        per_agent = metrics.get("perAgent") or {}
        if per_agent:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Agent")
            table.add_column("Count", justify="right")
            table.add_column("Success", justify="right")
            table.add_column("Fallback", justify="right")
            for agent, counts in per_agent.items():
                table.add_row(
                    agent,
                    str(counts.get("count", 0)),
                    str(counts.get("success", 0)),
                    str(counts.get("fallback", 0)),
                )
            self.console.print(table)

    def error(self, message: str, error_code: str | None = None) -> None:
        """Output error message.

        Args:
            message: Error message
            error_code: Optional error code
        """
        if self.json_mode:
            output = {"success": False, "error": message}
            if error_code:
                output["error_code"] = error_code
            print(json.dumps(output))
        else:
            self.console.print(f"[red]✗ Error:[/red] {message}")

    def success(self, message: str, data: dict | None = None) -> None:
        """Output success message.

        Args:
            message: Success message
            data: Optional data to include
        """
        if self.json_mode:
            output: dict[str, Any] = {"success": True, "message": message}
            if data:
                output["data"] = data
            print(json.dumps(output, cls=JSONEncoder))
        else:
            self.console.print(f"[green]✓[/green] {message}")

    def warning(self, message: str) -> None:
        """Output warning message."""
        if self.json_mode:
            print(json.dumps({"warning": message}))
        else:
            self.console.print(f"[yellow]⚠[/yellow] {message}")
