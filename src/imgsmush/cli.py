from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from imgsmush.api.server_http import run_http_server
from imgsmush.config import default_config_path, load_config, write_default_config
from imgsmush.models import Mode
from imgsmush.service import SmushService
from imgsmush.util.logging import setup_logging, use_color

app = typer.Typer(help="imgsmush: optimize image assets")
field_app = typer.Typer(help="Manage content fields")
item_app = typer.Typer(help="Manage content items")
image_app = typer.Typer(help="Manage item images")
app.add_typer(field_app, name="field")
app.add_typer(item_app, name="item")
app.add_typer(item_app, name="items")
app.add_typer(image_app, name="image")


@dataclass(slots=True)
class AppState:
    service: SmushService
    console: Console
    config_path: Path


def _state(ctx: typer.Context) -> AppState:
    st = ctx.obj
    if not isinstance(st, AppState):
        raise RuntimeError("app state not initialized")
    return st


def _emit_obj(console: Console, obj: dict, json_out: bool) -> None:
    if json_out:
        typer.echo(json.dumps(obj, indent=2))
        return
    for k, v in obj.items():
        console.print(f"[bold]{k}[/bold]: {v}")


def _emit_status(console: Console, status: dict[str, Any], json_out: bool) -> None:
    if json_out:
        typer.echo(json.dumps(status, indent=2))
        return
    if status.get("error"):
        console.print(f"[red]not optimized:[/red] {status.get('file', '')} ({status['error']})")
        return
    console.print(
        f"[green]optimized[/green] {status.get('file', '')}  "
        f"[bold]reduction {status.get('percentNew', '0')}%[/bold]"
    )


def _fail(console: Console, exc: Exception) -> None:
    console.print(f"[red]error:[/red] {exc}")
    raise typer.Exit(1) from exc


@app.callback()
def main(
    ctx: typer.Context,
    config: Annotated[Path | None, typer.Option("--config", help="Config YAML path")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose logging")] = False,
) -> None:
    setup_logging(verbose)
    cfg_path = config.expanduser() if config else default_config_path()
    if not cfg_path.exists():
        write_default_config(cfg_path)
    cfg = load_config(cfg_path)
    svc = SmushService(cfg)
    color_on = use_color()
    console = Console(color_system="auto" if color_on else None, force_terminal=color_on)
    ctx.obj = AppState(service=svc, console=console, config_path=cfg_path)


@app.command("init-config")
def init_config(
    ctx: typer.Context,
    path: Annotated[Path | None, typer.Option("--path", help="Write config to this path")] = None,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    written = write_default_config(path.expanduser() if path else None)
    _emit_obj(st.console, {"config_path": str(written)}, json_out)


@app.command("tools")
def tools_cmd(
    ctx: typer.Context,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    rows = st.service.tools()
    if json_out:
        typer.echo(json.dumps({"search_path": st.service.search_path(), "tools": rows}, indent=2))
        return
    st.console.print(f"[bold]search path:[/bold] {', '.join(st.service.search_path())}")
    table = Table(title="optimizers")
    table.add_column("optimizer")
    table.add_column("path")
    for row in rows:
        path = row["path"] or "[dim]not found[/dim]"
        table.add_row(str(row["name"]), path)
    st.console.print(table)


@field_app.command("add")
def field_add_cmd(
    ctx: typer.Context,
    name: str,
    field_type: Annotated[str, typer.Option("--type", help="image|repeater")] = "image",
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    try:
        result = st.service.field_add(name, field_type)
    except ValueError as exc:
        _fail(st.console, exc)
    _emit_obj(st.console, result, json_out)


@field_app.command("list")
def field_list_cmd(
    ctx: typer.Context,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    rows = st.service.field_list()
    if json_out:
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(title="fields")
    table.add_column("name")
    table.add_column("type")
    for row in rows:
        table.add_row(str(row["name"]), str(row["type"]))
    st.console.print(table)


@item_app.command("add")
def item_add_cmd(
    ctx: typer.Context,
    name: str,
    parent: Annotated[int | None, typer.Option("--parent", help="Parent item id for repeater items")] = None,
    field: Annotated[str | None, typer.Option("--field", help="Repeater field on the parent")] = None,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    try:
        result = st.service.item_add(name, parent_id=parent, field=field)
    except ValueError as exc:
        _fail(st.console, exc)
    _emit_obj(st.console, result, json_out)


@item_app.command("list")
def item_list_cmd(
    ctx: typer.Context,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    rows = st.service.item_list()
    if json_out:
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(title="items")
    table.add_column("id")
    table.add_column("name")
    table.add_column("parent")
    table.add_column("images")
    for row in rows:
        parent = "" if row["parent_id"] is None else f"{row['parent_id']} ({row['parent_field']})"
        table.add_row(str(row["id"]), str(row["name"]), parent, str(row["images"]))
    st.console.print(table)


@item_app.command("ls")
def item_ls_cmd(
    ctx: typer.Context,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    item_list_cmd(ctx, json_out)


@image_app.command("add")
def image_add_cmd(
    ctx: typer.Context,
    item_id: int,
    field: str,
    src: Annotated[Path, typer.Argument(help="File to upload")],
    name: Annotated[str | None, typer.Option("--name", help="Store under this file name")] = None,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    try:
        result = st.service.image_add(item_id, field, src, name=name)
    except ValueError as exc:
        _fail(st.console, exc)
    if json_out:
        typer.echo(json.dumps(result, indent=2))
        return
    st.console.print(f"[green]added[/green] {result['item_id']},{result['file']}")
    if result["optimized"] is not None:
        _emit_status(st.console, result["optimized"], False)


@image_app.command("list")
def image_list_cmd(
    ctx: typer.Context,
    item_id: int,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    try:
        rows = st.service.item_images(item_id)
    except ValueError as exc:
        _fail(st.console, exc)
    if json_out:
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(title=f"images: {item_id}")
    table.add_column("item")
    table.add_column("field")
    table.add_column("file")
    table.add_column("size")
    table.add_column("dimensions")
    table.add_column("variations")
    for row in rows:
        dims = f"{row['width']}x{row['height']}" if row["width"] else ""
        table.add_row(
            str(row["item_id"]),
            str(row["field"]),
            str(row["file"]),
            str(row["size"] or ""),
            dims,
            ", ".join(row["variations"]),
        )
    st.console.print(table)


@image_app.command("ls")
def image_ls_cmd(
    ctx: typer.Context,
    item_id: int,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    image_list_cmd(ctx, item_id, json_out)


@image_app.command("rm")
def image_rm_cmd(ctx: typer.Context, item_id: int, filename: str) -> None:
    st = _state(ctx)
    try:
        result = st.service.image_remove(item_id, filename)
    except ValueError as exc:
        _fail(st.console, exc)
    typer.echo(f"removed {', '.join(result['deleted']) or filename}")


@image_app.command("resize")
def image_resize_cmd(
    ctx: typer.Context,
    item_id: int,
    filename: str,
    width: Annotated[int, typer.Option("--width", "-w")] = 0,
    height: Annotated[int, typer.Option("--height", "-h")] = 0,
    suffix: Annotated[str | None, typer.Option("--suffix")] = None,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    try:
        result = st.service.image_resize(item_id, filename, width, height, suffix=suffix)
    except ValueError as exc:
        _fail(st.console, exc)
    if json_out:
        typer.echo(json.dumps(result, indent=2))
        return
    st.console.print(f"[green]created[/green] {result['item_id']},{result['file']}")
    if result["optimized"] is not None:
        _emit_status(st.console, result["optimized"], False)


@app.command("optimize")
def optimize_cmd(
    ctx: typer.Context,
    file: Annotated[str, typer.Argument(help="<item_id>,<filename>")],
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    status = st.service.optimize(file, mode=Mode.MANUAL)
    _emit_status(st.console, status, json_out)
    if status.get("error"):
        raise typer.Exit(1)


@app.command("optimize-file")
def optimize_file_cmd(
    ctx: typer.Context,
    path: Path,
    mode: Annotated[Mode, typer.Option("--mode")] = Mode.MANUAL,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    try:
        status = st.service.optimize_path(path, mode=mode)
    except ValueError as exc:
        _fail(st.console, exc)
    if json_out:
        typer.echo(json.dumps(status, indent=2))
        return
    _emit_status(st.console, status, False)
    if status.get("error"):
        raise typer.Exit(1)


@app.command("bulk")
def bulk_cmd(
    ctx: typer.Context,
    start: Annotated[int, typer.Option("--start", help="Item offset to resume from")] = 0,
    step: Annotated[bool, typer.Option("--step", help="Print one page of the worklist and exit")] = False,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    svc = st.service
    if step:
        typer.echo(json.dumps(svc.bulk_step(start), indent=2))
        return

    first = svc.bulk_step(start)
    if first.get("error"):
        st.console.print(f"[red]{first['error']}[/red]")
        raise typer.Exit(1)

    stats = {"items": 0, "images": 0, "optimized": 0, "errors": 0}
    statuses: list[dict[str, Any]] = []
    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=st.console,
        disable=json_out,
    ) as progress:
        task = progress.add_task("bulk optimize", total=max(int(first["numBatches"]), 1))
        progress.update(task, completed=start)
        for page in svc.bulk_pages(start):
            stats["items"] += 1
            for work in page.worklist:
                status = svc.optimize(work.key, mode=Mode.BULK)
                statuses.append(status)
                stats["images"] += 1
                if status.get("error"):
                    stats["errors"] += 1
                else:
                    stats["optimized"] += 1
            progress.update(task, completed=page.cursor.offset)

    if json_out:
        typer.echo(json.dumps({"stats": stats, "results": statuses}, indent=2))
        return
    _emit_obj(st.console, stats, False)


@app.command("status")
def status_cmd(
    ctx: typer.Context,
    json_out: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    st = _state(ctx)
    _emit_obj(st.console, st.service.status(), json_out)


@app.command("serve")
def serve_cmd(
    ctx: typer.Context,
    host: Annotated[str, typer.Option("--host")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port")] = 8282,
) -> None:
    st = _state(ctx)
    st.console.print(f"serving step API on http://{host}:{port}")
    code = run_http_server(st.service, host=host, port=port)
    raise typer.Exit(code)


if __name__ == "__main__":
    app()
