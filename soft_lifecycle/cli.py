#!/usr/bin/env python3
"""
Command-line interface for the Soft Lifecycle Toolkit.

Provides configuration, policy inspection and destroyed-record auditing tools.
"""

import importlib
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

import click
import pandas as pd  # type: ignore[import-untyped]
from dateutil import parser as date_parser  # type: ignore[import-untyped]
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from sqlalchemy import inspect

from . import __version__
from .config import TimestampPrecision, get_config
from .lifecycle import LifecycleSelect, PolicyTable, Visibility, is_lifecycle_enabled

console = Console()


def _load_target(target: str) -> Tuple[Any, Optional[str]]:
    """Import ``module[:attr]`` and return the module and attribute name."""
    module_name, _, attr = target.partition(":")
    if os.getcwd() not in sys.path:
        sys.path.insert(0, os.getcwd())
    module = importlib.import_module(module_name)
    return module, attr or None


def _mapped_classes(module: Any, base_name: Optional[str]) -> List[Type[Any]]:
    if base_name:
        base = getattr(module, base_name)
        return sorted(
            (mapper.class_ for mapper in base.registry.mappers),
            key=lambda cls: cls.__name__,
        )

    classes = []
    for value in vars(module).values():
        if isinstance(value, type) and hasattr(value, "__mapper__"):
            classes.append(value)
    return sorted(classes, key=lambda cls: cls.__name__)


def _record_rows(model: Type[Any], records: List[Any]) -> List[Dict[str, Any]]:
    keys = [attr.key for attr in inspect(model).column_attrs]
    return [{key: getattr(record, key) for key in keys} for record in records]


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Soft Lifecycle Toolkit - Reversible destruction for SQLAlchemy models."""
    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]Soft Lifecycle Toolkit[/bold blue] v{__version__}\n"
                "[dim]Reversible destruction for SQLAlchemy models[/dim]\n\n"
                "Use [bold]soft-lifecycle --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.group()
def config() -> None:
    """Manage lifecycle configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    try:
        config = get_config()
        config_dict = config.to_dict()

        if format == "json":
            console.print_json(data=config_dict)
        elif format == "yaml":
            import yaml  # type: ignore[import-untyped]

            console.print(yaml.dump(config_dict, default_flow_style=False))
        else:
            table = Table(title="Lifecycle Configuration", show_header=True)
            table.add_column("Setting", style="cyan")
            table.add_column("Value", style="green")

            categories = {
                "Timestamps": ["timestamp_precision", "timezone_aware"],
                "Cascades": ["cascade_enabled", "counter_cache_enabled"],
                "Scoping": ["include_destroyed_option"],
                "Tooling": ["log_level", "database_url"],
            }

            for category, settings in categories.items():
                table.add_row(f"[bold]{category}[/bold]", "")
                for setting in settings:
                    value = config_dict.get(setting)
                    if value is None:
                        value = "[dim]Not configured[/dim]"
                    elif isinstance(value, bool):
                        value = "✓" if value else "✗"
                    table.add_row(f"  {setting}", str(value))

            console.print(table)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@config.command("validate")
def config_validate() -> None:
    """Validate current configuration."""
    try:
        config = get_config()
    except Exception as e:
        console.print(f"[red]Error validating configuration: {e}[/red]")
        sys.exit(1)

    warnings = []

    if not config.cascade_enabled:
        warnings.append(
            "Cascades are disabled - dependents keep their state when owners "
            "are destroyed"
        )
    if not config.counter_cache_enabled:
        warnings.append("Counter caches are disabled and will drift from live counts")
    if config.timestamp_precision != TimestampPrecision.MICROSECOND:
        warnings.append(
            f"Instants are truncated to {config.timestamp_precision.value}s - "
            "cascades less than one unit apart share a correlation instant"
        )
    if (
        config.timezone_aware
        and config.database_url
        and config.database_url.startswith("sqlite")
    ):
        warnings.append("SQLite does not store timezone offsets")

    console.print("[green]✓ Configuration is valid[/green]")

    if warnings:
        console.print("\n[yellow]⚠ Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"  [yellow]• {warning}[/yellow]")


@cli.command()
@click.argument("target")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def policies(target: str, format: str) -> None:
    """Show the dependent policies of the models in TARGET (module[:Base])."""
    try:
        module, base_name = _load_target(target)
        classes = _mapped_classes(module, base_name)
    except Exception as e:
        console.print(f"[red]Error loading models from {target}: {e}[/red]")
        sys.exit(1)

    if not classes:
        console.print(f"[yellow]No mapped classes found in {target}[/yellow]")
        return

    if format == "json":
        data = {
            cls.__name__: {
                "lifecycle": is_lifecycle_enabled(cls),
                "relations": PolicyTable.for_model(cls).rows(),
            }
            for cls in classes
        }
        console.print_json(data=data)
        return

    for cls in classes:
        rows = PolicyTable.for_model(cls).rows()
        marker = "destroyed_at" if is_lifecycle_enabled(cls) else "no destroyed_at"
        table = Table(title=f"{cls.__name__} [dim]({marker})[/dim]", show_header=True)
        table.add_column("Relation", style="cyan")
        table.add_column("Policy", style="green")
        table.add_column("Direction", style="blue")
        table.add_column("Counter cache", style="magenta")
        table.add_column("Flags", style="dim")

        for row in rows:
            flags = [
                name
                for name in ("polymorphic", "include_destroyed")
                if row[name]
            ]
            table.add_row(
                row["relation"],
                row["policy"],
                row["direction"],
                row["counter_cache"] or "",
                ", ".join(flags),
            )

        console.print(table)


@cli.command()
@click.argument("target")
@click.option(
    "--database-url",
    envvar="SOFT_LIFECYCLE_DATABASE_URL",
    help="Database URL, defaults to the configured one",
)
@click.option("--at", "at", help="Only rows destroyed at exactly this instant")
@click.option("--format", type=click.Choice(["table", "json", "csv"]), default="table")
@click.option(
    "--output",
    type=click.Path(),
    help="Write to a .csv, .json or .xlsx file instead of the console",
)
def destroyed(
    target: str,
    database_url: Optional[str],
    at: Optional[str],
    format: str,
    output: Optional[str],
) -> None:
    """List destroyed rows of TARGET (module:Model)."""
    database_url = database_url or get_config().database_url
    if not database_url:
        console.print("[red]Error: Database URL required[/red]")
        console.print(
            "Set SOFT_LIFECYCLE_DATABASE_URL environment variable or use --database-url"
        )
        sys.exit(1)

    try:
        instant: Optional[datetime] = date_parser.isoparse(at) if at else None
    except ValueError as e:
        console.print(f"[red]Error: invalid instant {at!r}: {e}[/red]")
        sys.exit(1)

    try:
        module, model_name = _load_target(target)
        if model_name is None:
            raise ValueError("expected module:Model")
        model = getattr(module, model_name)
    except Exception as e:
        console.print(f"[red]Error loading model {target}: {e}[/red]")
        sys.exit(1)

    if not is_lifecycle_enabled(model):
        console.print(f"[red]Error: {model.__name__} does not declare destroyed_at[/red]")
        sys.exit(1)

    try:
        from sqlalchemy import create_engine
        from sqlalchemy.orm import Session

        engine = create_engine(database_url)
        with Session(engine) as session:
            records = LifecycleSelect(model, Visibility.DESTROYED, at=instant).all(session)
            rows = _record_rows(model, records)
        engine.dispose()
    except Exception as e:
        console.print(f"[red]Error querying destroyed rows: {e}[/red]")
        sys.exit(1)

    df = pd.DataFrame(rows)

    if output:
        output_path = Path(output)
        suffix = output_path.suffix.lower()
        if suffix == ".json":
            df.to_json(output_path, orient="records", date_format="iso", indent=2)
        elif suffix in (".xlsx", ".xls"):
            df.to_excel(output_path, index=False, engine="openpyxl")
        else:
            df.to_csv(output_path, index=False)
        console.print(
            f"[green]✓ Exported {len(rows)} destroyed {model.__name__} rows to "
            f"{output_path}[/green]"
        )
        return

    if not rows:
        console.print(f"[yellow]No destroyed {model.__name__} rows found[/yellow]")
        return

    if format == "json":
        console.print_json(df.to_json(orient="records", date_format="iso"))
    elif format == "csv":
        print(df.to_csv(index=False))
    else:
        title = f"Destroyed {model.__name__} rows"
        if instant is not None:
            title += f" at {instant.isoformat()}"
        table = Table(title=title)
        for column in df.columns:
            table.add_column(str(column), style="cyan" if column == "destroyed_at" else None)
        for row in rows:
            table.add_row(*["" if value is None else str(value) for value in row.values()])
        console.print(table)


@cli.command()
def doctor() -> None:
    """Run diagnostic checks on the lifecycle toolkit installation."""
    console.print("[bold]Running Soft Lifecycle diagnostics...[/bold]\n")

    checks_passed = 0
    checks_failed = 0

    # Check 1: Configuration
    try:
        config = get_config()
        console.print("[green]✓[/green] Configuration loaded successfully")
        checks_passed += 1
    except Exception as e:
        console.print(f"[red]✗[/red] Configuration error: {e}")
        checks_failed += 1
        config = None

    # Check 2: SQLAlchemy version
    import sqlalchemy

    if int(sqlalchemy.__version__.split(".")[0]) >= 2:
        console.print(f"[green]✓[/green] SQLAlchemy {sqlalchemy.__version__}")
        checks_passed += 1
    else:
        console.print(
            f"[red]✗[/red] SQLAlchemy {sqlalchemy.__version__} found, 2.0+ required"
        )
        checks_failed += 1

    # Check 3: Database connectivity (if configured)
    db_url = config.database_url if config is not None else None
    if db_url:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task("Connecting to database...", total=None)
            try:
                from sqlalchemy import create_engine, text

                engine = create_engine(db_url)
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                engine.dispose()
                error = None
            except Exception as e:
                error = e

        if error is None:
            console.print("[green]✓[/green] Database connection successful")
            checks_passed += 1
        else:
            console.print(f"[red]✗[/red] Database connection failed: {error}")
            checks_failed += 1
    else:
        console.print(
            "[yellow]⚠[/yellow] No database configured "
            "(SOFT_LIFECYCLE_DATABASE_URL not set)"
        )

    # Summary
    console.print("\n[bold]Summary:[/bold]")
    console.print(f"  Checks passed: [green]{checks_passed}[/green]")
    console.print(f"  Checks failed: [red]{checks_failed}[/red]")

    if checks_failed == 0:
        console.print("\n[green]✓ All systems operational[/green]")
    else:
        console.print("\n[yellow]⚠ Some issues detected - review output above[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    cli()
