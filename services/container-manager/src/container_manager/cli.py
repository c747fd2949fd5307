import json as json_lib
from pathlib import Path

from rich.console import Console
from rich.table import Table
import typer
import uvicorn

from shared.logging_config import setup_logging

from .detection import FolderSnapshot, TopologyAnalyzer
from .errors import ScanError

app = typer.Typer(
    name="container-manager",
    help="Folder-as-a-service control plane",
    add_completion=False,
)
console = Console()


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for diagnostics"),
):
    """Folder-as-a-service control plane."""
    setup_logging(service_name="container-manager-cli", log_level=log_level)


@app.command()
def analyze(
    path: Path = typer.Argument(..., help="Folder to analyze"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Detect the services in a local folder without storing anything."""
    try:
        snapshot = FolderSnapshot.from_path(path)
    except ScanError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(code=1) from e

    result = TopologyAnalyzer().analyze_snapshot(snapshot)

    if json_output:
        typer.echo(json_lib.dumps(result.model_dump(mode="json"), indent=2))
        return

    console.print(f"[bold]Strategy:[/bold] {result.deployment_strategy}")
    patterns = result.patterns
    for label, values in (
        ("Languages", patterns.languages),
        ("Frameworks", patterns.frameworks),
        ("Databases", patterns.databases),
    ):
        console.print(f"{label}: {', '.join(values) or '-'}")

    table = Table(title="Recommended services")
    table.add_column("Name", style="magenta")
    table.add_column("Type", style="cyan")
    table.add_column("Folder")
    table.add_column("Confidence", justify="right", style="green")
    table.add_column("Ports")
    table.add_column("Health")
    for rec in result.recommendations:
        ports = ", ".join(f"{c}->{h}" if h else c for c, h in rec.ports.items())
        health = rec.health_check.path if rec.health_check.enabled else "-"
        table.add_row(
            rec.name,
            rec.service_type.value,
            rec.folder_path,
            f"{rec.confidence:.2f}",
            ports or "-",
            health,
        )
    console.print(table)

    if result.graph.edges:
        console.print("[bold]Connections:[/bold]")
        for edge in result.graph.edges:
            console.print(f"  {edge.source} -> {edge.target}")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
):
    """Run the API server."""
    uvicorn.run("container_manager.main:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    app()
