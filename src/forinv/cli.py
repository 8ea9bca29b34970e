"""Typer CLI entrypoint for forinv."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterator, Optional

import typer

from .config import ConfigBundle, load_config_bundle
from .engine import SheetsSync, build_sync_payload, export_csv
from .engine.registry import SETTING_OPERATOR_NAME, ProjectRegistry
from .exceptions import (
    ConfigError,
    ForinvError,
    InvalidState,
    InvariantViolation,
    NotFoundError,
    StorageError,
    SyncError,
    TransportTimeout,
    ValidationError,
)
from .ledger.storage import RecordStore
from .records.models import Project


EXIT_SUCCESS = 0
EXIT_VALIDATION_ERROR = 2
EXIT_STATE_ERROR = 3
EXIT_IO_ERROR = 4
EXIT_CONFIG_ERROR = 5
EXIT_SYNC_UNCONFIRMED = 6


app = typer.Typer(help="Forest inventory field store")
project_app = typer.Typer(help="Project commands")
species_app = typer.Typer(help="Species catalog of the current project")
sample_app = typer.Typer(help="Sample-plot trees (diameter and height)")
inventory_app = typer.Typer(help="Inventory trees (piedilista)")
settings_app = typer.Typer(help="Key/value settings")
sync_app = typer.Typer(help="Outbound spreadsheet sync")
app.add_typer(project_app, name="project")
app.add_typer(species_app, name="species")
app.add_typer(sample_app, name="sample")
app.add_typer(inventory_app, name="inventory")
app.add_typer(settings_app, name="settings")
app.add_typer(sync_app, name="sync")


@dataclass
class CliState:
    workspace: Path
    config_dir: Optional[Path]


@app.callback()
def main_callback(
    ctx: typer.Context,
    workspace: Path = typer.Option(
        Path(".forinv"),
        "--workspace",
        "-w",
        help="Directory for the record store",
    ),
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration directory (defaults built in)",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """Shared options for every command."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CliState(workspace=workspace, config_dir=config_dir)


@contextmanager
def _registry(ctx: typer.Context) -> Iterator[ProjectRegistry]:
    state: CliState = ctx.obj
    with _handle_errors():
        config = load_config_bundle(state.config_dir)
        registry = ProjectRegistry(RecordStore(state.workspace, config), config)
        registry.start()
        yield registry
        registry.close()


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except ConfigError as exc:
        typer.echo(f"Config error: {exc}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc
    except ValidationError as exc:
        typer.echo(f"Validation error: {exc}", err=True)
        raise typer.Exit(EXIT_VALIDATION_ERROR) from exc
    except (InvalidState, InvariantViolation) as exc:
        typer.echo(f"Refused: {exc}", err=True)
        raise typer.Exit(EXIT_STATE_ERROR) from exc
    except NotFoundError as exc:
        typer.echo(f"Not found: {exc}", err=True)
        raise typer.Exit(EXIT_IO_ERROR) from exc
    except TransportTimeout as exc:
        typer.echo(f"Sync unconfirmed: {exc}. Check the spreadsheet.", err=True)
        raise typer.Exit(EXIT_SYNC_UNCONFIRMED) from exc
    except (StorageError, SyncError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(EXIT_IO_ERROR) from exc
    except ForinvError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(EXIT_IO_ERROR) from exc


def _echo_json(payload) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _project_payload(project: Project, current_id: Optional[str] = None) -> dict:
    payload = {
        "id": project.id,
        "name": project.name,
        "operator": project.operator,
        "description": project.description,
        "location": project.location,
        "inventory_area_ha": project.inventory_area_ha,
        "created_at": project.created_at,
        "updated_at": project.updated_at,
        "species": sorted(project.species_catalog),
    }
    if current_id is not None:
        payload["current"] = project.id == current_id
    return payload


# ----------------------------------------------------------------------
# project
@project_app.command("new")
def project_new(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name"),
    operator: Optional[str] = typer.Option(None, "--operator", help="Operator name"),
    description: str = typer.Option("", "--description", help="Free-text description"),
    location: str = typer.Option("", "--location", help="Stand location"),
    area: Optional[float] = typer.Option(
        None, "--area", help="Inventory area in hectares"
    ),
) -> None:
    """Create a project and make it current."""

    with _registry(ctx) as registry:
        project = registry.create_project(
            name,
            operator=operator,
            description=description,
            location=location,
            inventory_area_ha=area,
        )
        _echo_json(_project_payload(project))


@project_app.command("list")
def project_list(ctx: typer.Context) -> None:
    """List projects, most recently modified first."""

    with _registry(ctx) as registry:
        current_id = registry.current_project.id
        _echo_json(
            {
                "projects": [
                    _project_payload(project, current_id)
                    for project in registry.projects
                ]
            }
        )


@project_app.command("use")
def project_use(
    ctx: typer.Context, project_id: str = typer.Argument(..., help="Project id")
) -> None:
    """Switch the current project."""

    with _registry(ctx) as registry:
        project = registry.set_current_project(project_id)
        _echo_json(_project_payload(project))


@project_app.command("update")
def project_update(
    ctx: typer.Context,
    project_id: Optional[str] = typer.Argument(None, help="Project id (default: current)"),
    name: Optional[str] = typer.Option(None, "--name"),
    operator: Optional[str] = typer.Option(None, "--operator"),
    description: Optional[str] = typer.Option(None, "--description"),
    location: Optional[str] = typer.Option(None, "--location"),
    area: Optional[float] = typer.Option(None, "--area", help="Inventory area in hectares"),
) -> None:
    """Edit project metadata."""

    with _registry(ctx) as registry:
        project = registry.update_project(
            project_id or registry.current_project.id,
            name=name,
            operator=operator,
            description=description,
            location=location,
            inventory_area_ha=area,
        )
        _echo_json(_project_payload(project))


@project_app.command("delete")
def project_delete(
    ctx: typer.Context, project_id: str = typer.Argument(..., help="Project id")
) -> None:
    """Delete a project with all of its trees."""

    with _registry(ctx) as registry:
        registry.delete_project(project_id)
        _echo_json({"deleted": project_id, "current": registry.current_project.id})


@project_app.command("duplicate")
def project_duplicate(
    ctx: typer.Context, project_id: str = typer.Argument(..., help="Project id")
) -> None:
    with _registry(ctx) as registry:
        project = registry.duplicate_project(project_id)
        _echo_json(_project_payload(project))


@project_app.command("export")
def project_export(
    ctx: typer.Context,
    project_id: Optional[str] = typer.Argument(None, help="Project id (default: current)"),
    fmt: str = typer.Option("json", "--format", "-f", help="json or csv"),
    out: Optional[Path] = typer.Option(
        None, "--out", "-o", dir_okay=False, help="Write to a file instead of stdout"
    ),
    all_projects: bool = typer.Option(False, "--all", help="Export every project (json only)"),
) -> None:
    """Export a project snapshot."""

    if fmt not in ("json", "csv"):
        typer.echo(f"Unknown format {fmt}; use json or csv", err=True)
        raise typer.Exit(EXIT_VALIDATION_ERROR)
    if all_projects and fmt != "json":
        typer.echo("--all is only available for json exports", err=True)
        raise typer.Exit(EXIT_VALIDATION_ERROR)

    with _registry(ctx) as registry:
        registry.save_current_session()
        if all_projects:
            text = json.dumps(registry.store.export_all(), indent=2, ensure_ascii=False)
        else:
            snapshot = registry.store.export_project(
                project_id or registry.current_project.id
            )
            if fmt == "csv":
                text = export_csv(snapshot)
            else:
                text = json.dumps(snapshot, indent=2, ensure_ascii=False)

    if out is None:
        typer.echo(text)
        return
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
    except OSError as exc:
        typer.echo(f"Failed to write export {out}: {exc}", err=True)
        raise typer.Exit(EXIT_IO_ERROR) from exc
    _echo_json({"output": str(out)})


@project_app.command("import")
def project_import(
    ctx: typer.Context,
    source: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    switch: bool = typer.Option(False, "--switch", help="Make the imported project current"),
) -> None:
    """Import a snapshot as a new project."""

    try:
        snapshot = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        typer.echo(f"Failed to read snapshot {source}: {exc}", err=True)
        raise typer.Exit(EXIT_IO_ERROR) from exc

    with _registry(ctx) as registry:
        project_id = registry.store.import_project(snapshot)
        if switch:
            project = registry.set_current_project(project_id)
        else:
            project = registry.store.get_project(project_id)
        _echo_json(_project_payload(project))


# ----------------------------------------------------------------------
# species
@species_app.command("list")
def species_list(ctx: typer.Context) -> None:
    with _registry(ctx) as registry:
        _echo_json(
            {
                "species": [
                    asdict(species)
                    for species in registry.current_project.species_catalog.values()
                ]
            }
        )


@species_app.command("add")
def species_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name"),
    form_factor: float = typer.Option(0.45, "--form-factor", help="Form factor in (0, 1]"),
    icon: str = typer.Option("🌳", "--icon"),
    default_height: Optional[float] = typer.Option(
        None, "--default-height", help="Height used when no samples exist (m)"
    ),
) -> None:
    """Add a species to the current project's catalog."""

    with _registry(ctx) as registry:
        definition = registry.add_species(
            name, icon=icon, form_factor=form_factor, default_height=default_height
        )
        _echo_json(asdict(definition))


@species_app.command("update")
def species_update(
    ctx: typer.Context,
    species_id: str = typer.Argument(..., help="Species id"),
    form_factor: Optional[float] = typer.Option(
        None, "--form-factor", help="Form factor in (0, 1]"
    ),
    icon: Optional[str] = typer.Option(None, "--icon"),
    default_height: Optional[float] = typer.Option(
        None, "--default-height", help="Height used when no samples exist (m)"
    ),
    clear_default_height: bool = typer.Option(
        False, "--clear-default-height", help="Drop the default height"
    ),
) -> None:
    """Change a species of the current project's catalog."""

    with _registry(ctx) as registry:
        definition = registry.update_species(
            species_id,
            icon=icon,
            form_factor=form_factor,
            default_height=default_height,
            clear_default_height=clear_default_height,
        )
        _echo_json(asdict(definition))


@species_app.command("remove")
def species_remove(
    ctx: typer.Context, species_id: str = typer.Argument(..., help="Species id")
) -> None:
    """Remove a species together with all of its trees."""

    with _registry(ctx) as registry:
        registry.remove_species(species_id)
        _echo_json({"removed": species_id})


# ----------------------------------------------------------------------
# sample trees
@sample_app.command("add")
def sample_add(
    ctx: typer.Context,
    area: str = typer.Option(..., "--area", help="Sampling area slot"),
    species: str = typer.Option(..., "--species", help="Species id"),
    diameter: float = typer.Option(..., "--diameter", help="Diameter at breast height (cm)"),
    height: float = typer.Option(..., "--height", help="Tree height (m)"),
    custom: bool = typer.Option(
        False, "--custom", help="Record the diameter as a custom value"
    ),
) -> None:
    """Record one complete sample tree."""

    with _registry(ctx) as registry:
        capture = registry.capture
        registry.select_area(area)
        capture.select_species(species)
        capture.capture_diameter(diameter, custom=custom)
        tree = capture.capture_height(height)
        _echo_json(
            {
                "tree": asdict(tree),
                "height_average": asdict(registry.session.height_averages[tree.species]),
            }
        )


@sample_app.command("list")
def sample_list(
    ctx: typer.Context,
    area: Optional[str] = typer.Option(None, "--area", help="Only this sampling area"),
) -> None:
    with _registry(ctx) as registry:
        trees = registry.store.list_sample_trees(registry.current_project.id, area=area)
        _echo_json({"sample_trees": [asdict(tree) for tree in trees]})


@sample_app.command("delete")
def sample_delete(
    ctx: typer.Context, tree_id: str = typer.Argument(..., help="Sample tree id")
) -> None:
    with _registry(ctx) as registry:
        registry.delete_sample_tree(tree_id)
        _echo_json({"deleted": tree_id})


# ----------------------------------------------------------------------
# inventory trees
@inventory_app.command("add")
def inventory_add(
    ctx: typer.Context,
    species: str = typer.Option(..., "--species", help="Species id"),
    diameter: float = typer.Option(..., "--diameter", help="Diameter at breast height (cm)"),
    count: int = typer.Option(1, "--count", min=1, help="Number of identical trees"),
    custom: bool = typer.Option(
        False, "--custom", help="Record the diameter as a custom value"
    ),
) -> None:
    """Record inventory trees of one species and diameter."""

    with _registry(ctx) as registry:
        registry.select_inventory_species(species)
        trees = [
            registry.record_inventory_tree(diameter, custom=custom) for _ in range(count)
        ]
        _echo_json({"inventory_trees": [asdict(tree) for tree in trees]})


@inventory_app.command("list")
def inventory_list(ctx: typer.Context) -> None:
    with _registry(ctx) as registry:
        _echo_json(
            {"inventory_trees": [asdict(tree) for tree in registry.session.inventory_trees]}
        )


@inventory_app.command("delete")
def inventory_delete(
    ctx: typer.Context, tree_id: str = typer.Argument(..., help="Inventory tree id")
) -> None:
    with _registry(ctx) as registry:
        registry.delete_inventory_tree(tree_id)
        _echo_json({"deleted": tree_id})


@inventory_app.command("clear")
def inventory_clear(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", help="Confirm without prompting"),
) -> None:
    """Delete every inventory tree of the current project."""

    if not yes:
        typer.confirm("Delete all inventory trees of the current project?", abort=True)
    with _registry(ctx) as registry:
        removed = registry.clear_inventory()
        _echo_json({"removed": removed})


# ----------------------------------------------------------------------
@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    """Stand totals, per-hectare figures and the species breakdown."""

    with _registry(ctx) as registry:
        _echo_json(
            {
                "project": registry.current_project.name,
                "summary": registry.summary().as_dict(),
                "height_averages": {
                    species: asdict(summary)
                    for species, summary in registry.session.height_averages.items()
                },
                "species": [
                    entry.as_dict() for entry in registry.species_breakdown().values()
                ],
            }
        )


@settings_app.command("get")
def settings_get(ctx: typer.Context, key: str = typer.Argument(...)) -> None:
    with _registry(ctx) as registry:
        _echo_json({key: registry.store.get_setting(key)})


@settings_app.command("set")
def settings_set(
    ctx: typer.Context,
    key: str = typer.Argument(...),
    value: str = typer.Argument(..., help="JSON value, or a plain string"),
) -> None:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    with _registry(ctx) as registry:
        if key == SETTING_OPERATOR_NAME:
            # the session flushes its operator on close
            registry.set_operator_name(str(parsed))
        registry.store.set_setting(key, parsed)
        _echo_json({key: parsed})


@sync_app.command("push")
def sync_push(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Print the payload instead of sending it"
    ),
) -> None:
    """Send the current project to the configured spreadsheet endpoint.

    Trees are marked as synced only after the endpoint confirms delivery.
    """

    with _registry(ctx) as registry:
        registry.save_current_session()
        session = registry.session
        sample_ids = [tree.id for tree in session.sample_trees]
        inventory_ids = [tree.id for tree in session.inventory_trees]
        payload = build_sync_payload(
            registry.store.export_project(registry.current_project.id)
        )
        if dry_run:
            _echo_json(payload)
            return
        config: ConfigBundle = registry.config
        status = asyncio.run(SheetsSync(config.sync).push(payload))
        marked = registry.mark_synced(sample_ids, inventory_ids)
        _echo_json(
            {"status": status, "endpoint": config.sync.endpoint, "marked_synced": marked}
        )


@sync_app.command("pending")
def sync_pending(ctx: typer.Context) -> None:
    """List trees of the current project not yet delivered."""

    with _registry(ctx) as registry:
        unsynced = registry.store.list_unsynced(registry.current_project.id)
        _echo_json(
            {
                kind: [tree.id for tree in trees]
                for kind, trees in unsynced.items()
            }
        )


if __name__ == "__main__":  # pragma: no cover
    app()
