from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from product_portal.core.bus.notification_bus import NotificationBus
from product_portal.core.compare.compare_periods import (
    find_changes,
    metric_change,
    period_label,
    previous_period,
)
from product_portal.core.config.settings import SettingsError, load_and_merge
from product_portal.core.edit.edit_product import ProductEditor, can_edit
from product_portal.core.errors import (
    AggregateValidationError,
    PortalError,
    StoreLoadError,
    WriteError,
)
from product_portal.core.io.load_store import dumps_aggregate, load_store_file, read_aggregate
from product_portal.core.load.load_product import NotFound, ProductAggregateLoader
from product_portal.core.model import COLLECTION_FIELDS, VERSIONED_KINDS, MonthScope
from product_portal.core.reconcile.reconciler import (
    ViewState,
    ViewStateReconciler,
    derive_view,
    empty_state_message,
)
from product_portal.core.resolve.scope_filter import filter_by_scope
from product_portal.core.resolve.version_select import format_version, select_latest, sort_by_version
from product_portal.core.store.document_store import FileStore
from product_portal.core.validate.validate_aggregate import summarize_aggregate

app = typer.Typer(add_completion=False, no_args_is_help=True)

KIND_LABELS: dict[str, str] = {
    "roadmap": "roadmap",
    "goals": "release goals",
    "plans": "release plan",
    "notes": "release notes",
}


@app.callback()
def _callback(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="Optional YAML settings file"),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG|INFO|WARNING|ERROR"),
) -> None:
    """Product portal CLI."""
    try:
        settings = load_and_merge(config)
    except FileNotFoundError:
        _print_errors(
            [
                StoreLoadError(
                    code="E_SETTINGS_FILE_NOT_FOUND",
                    message=f"settings file not found: {config}",
                    path="config",
                )
            ]
        )
        raise typer.Exit(code=1)
    except SettingsError as e:
        _print_errors(
            [AggregateValidationError(code="E_SETTINGS_FILE_INVALID", message=str(e), path="config")]
        )
        raise typer.Exit(code=2)

    level = (log_level or settings["log_level"]).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


@app.command("validate")
def validate(
    ctx: typer.Context,
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Validate the aggregate held in a store file."""
    _check_format(format, "E_VALIDATE_UNKNOWN_FORMAT")
    settings = ctx.obj
    path = store or settings["store_path"]

    def _to_item(e: PortalError) -> dict:
        source = "load" if isinstance(e, StoreLoadError) else "validate"
        return {
            "code": e.code,
            "message": e.message,
            "file": e.file,
            "path": e.path,
            "severity": "error",
            "source": source,
        }

    def _emit_json(ok: bool, *, exit_code: int, errors: list[PortalError], summary: dict | None) -> None:
        payload = {
            "tool": "portal",
            "command": "validate",
            "ok": ok,
            "error_count": len(errors),
            "errors": [_to_item(e) for e in errors],
            "summary": summary,
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        raise typer.Exit(code=exit_code)

    try:
        text = load_store_file(path, settings["store_key"])
    except StoreLoadError as e:
        if format == "json":
            _emit_json(False, exit_code=1, errors=[e], summary=None)
        _print_errors([e])
        raise typer.Exit(code=1)

    aggregate, errors = read_aggregate(text, file=path)
    if errors or aggregate is None:
        if format == "json":
            _emit_json(False, exit_code=2, errors=errors, summary=None)
        _print_errors(errors)
        raise typer.Exit(code=2)

    if format == "text":
        typer.echo(summarize_aggregate(aggregate))
        return

    summary = {
        "portfolio_count": len(aggregate.portfolios_by_id),
        "product_count": len(aggregate.products_by_id),
        "product_ids": sorted(aggregate.products_by_id),
    }
    _emit_json(True, exit_code=0, errors=[], summary=summary)


@app.command("show")
def show(
    ctx: typer.Context,
    product_id: str = typer.Argument(..., help="Product id"),
    month: int | None = typer.Option(None, "--month"),
    year: int | None = typer.Option(None, "--year"),
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Show the latest documents of a product for one period."""
    _check_format(format, "E_SHOW_UNKNOWN_FORMAT")
    settings = ctx.obj
    scope = _scope(settings, month, year)
    loader = ProductAggregateLoader(_open_store(settings, store), key=settings["store_key"])

    result = loader.load(product_id)
    if isinstance(result, NotFound):
        _fail_not_found(result)

    view = derive_view(result, scope)
    if format == "json":
        typer.echo(json.dumps(_view_payload(view), indent=2, sort_keys=True))
        return
    for line in _render_view(view):
        typer.echo(line)


@app.command("versions")
def versions(
    ctx: typer.Context,
    product_id: str = typer.Argument(..., help="Product id"),
    kind: str = typer.Option("goals", "--kind", help="roadmap|goals|plans|notes"),
    month: int | None = typer.Option(None, "--month"),
    year: int | None = typer.Option(None, "--year"),
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
) -> None:
    """List every version of one document kind in a period, newest first."""
    settings = ctx.obj
    _check_kind(kind)
    scope = _scope(settings, month, year)
    loader = ProductAggregateLoader(_open_store(settings, store), key=settings["store_key"])

    result = loader.load(product_id)
    if isinstance(result, NotFound):
        _fail_not_found(result)

    collection = getattr(result.product, COLLECTION_FIELDS[kind])
    scoped = filter_by_scope(collection, scope.year_scope() if kind == "roadmap" else scope)
    if not scoped:
        typer.echo(empty_state_message(KIND_LABELS[kind], scope))
        return

    latest = select_latest(scoped)
    table = Table(title=f"{result.product.name}: {KIND_LABELS[kind]}")
    table.add_column("Version")
    table.add_column("Id")
    table.add_column("Created")
    table.add_column("Latest")
    for doc in sort_by_version(scoped):
        table.add_row(
            format_version(doc.version),
            doc.id,
            doc.created_at or "",
            "*" if doc is latest else "",
        )
    Console().print(table)


@app.command("compare")
def compare(
    ctx: typer.Context,
    product_id: str = typer.Argument(..., help="Product id"),
    month: int | None = typer.Option(None, "--month"),
    year: int | None = typer.Option(None, "--year"),
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
) -> None:
    """Compare a period's latest goals, plan and metrics with the previous month."""
    settings = ctx.obj
    scope = _scope(settings, month, year)
    prev = previous_period(scope)
    loader = ProductAggregateLoader(_open_store(settings, store), key=settings["store_key"])

    result = loader.load(product_id)
    if isinstance(result, NotFound):
        _fail_not_found(result)

    current = derive_view(result, scope)
    before = derive_view(result, prev)
    typer.echo(f"{result.product.name}: {period_label(scope)} vs {period_label(prev)}")

    goals = find_changes(
        current.latest_release_goal.goals if current.latest_release_goal else [],
        before.latest_release_goal.goals if before.latest_release_goal else [],
        ["description", "current_state", "target_state", "status"],
    )
    plan = find_changes(
        current.latest_release_plan.items if current.latest_release_plan else [],
        before.latest_release_plan.items if before.latest_release_plan else [],
        ["title", "description", "status", "priority"],
    )
    for label, changes in (("Goals", goals), ("Plan items", plan)):
        typer.echo(
            f"{label}: +{len(changes.added)} -{len(changes.removed)} ~{len(changes.modified)}"
        )

    prev_metrics = {m.name: m for m in before.metrics}
    for m in current.metrics:
        old = prev_metrics.get(m.name)
        if old is None:
            typer.echo(f"Metric {m.name}: {m.value} (new)")
            continue
        delta = metric_change(m.value, old.value)
        typer.echo(f"Metric {m.name}: {old.value} -> {m.value} ({delta.direction} {delta.percentage:.1f}%)")


@app.command("add-version")
def add_version(
    ctx: typer.Context,
    product_id: str = typer.Argument(..., help="Product id"),
    kind: str = typer.Option(..., "--kind", help="roadmap|goals|plans|notes"),
    month: int | None = typer.Option(None, "--month"),
    year: int | None = typer.Option(None, "--year"),
    link: str | None = typer.Option(None, "--link", help="Document link (roadmap/notes)"),
    role: str = typer.Option("stakeholder", "--role", help="admin|product_manager|stakeholder"),
    expected_revision: int | None = typer.Option(
        None,
        "--expected-revision",
        help="Reject the write if the store has changed since this revision",
    ),
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
) -> None:
    """Append the next version of a document for a period."""
    settings = ctx.obj
    _check_kind(kind)
    scope = _scope(settings, month, year)
    file_store = _open_store(settings, store)
    bus = NotificationBus(file_store)
    editor = ProductEditor(file_store, bus, key=settings["store_key"])

    try:
        res = editor.append_version(
            product_id,
            kind,
            scope,
            allowed=can_edit(role),
            link=link,
            expected_revision=expected_revision,
        )
    except WriteError as e:
        _print_errors([e])
        raise typer.Exit(code=1 if e.code in {"E_STORE_EMPTY", "E_PRODUCT_NOT_FOUND"} else 2)
    finally:
        bus.close()

    doc = res.appended
    typer.echo(
        f"OK: appended {KIND_LABELS[kind]} v{format_version(doc.version)} ({doc.id}) at revision {res.revision}"
    )


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="JSON document with portfolios/products"),
    role: str = typer.Option("stakeholder", "--role", help="admin|product_manager|stakeholder"),
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
) -> None:
    """Validate a JSON export and write it into the store as the whole aggregate."""
    settings = ctx.obj
    if role != "admin":
        _print_errors(
            [WriteError(code="E_WRITE_FORBIDDEN", message="only admin may import", path="role")]
        )
        raise typer.Exit(code=2)

    p = Path(path)
    if not p.exists():
        _print_errors([StoreLoadError(code="E_FILE_NOT_FOUND", message="file does not exist", file=str(p))])
        raise typer.Exit(code=1)

    aggregate, errors = read_aggregate(p.read_text(encoding="utf-8"), file=str(p))
    if errors or aggregate is None:
        _print_errors(errors)
        raise typer.Exit(code=2)

    file_store = _open_store(settings, store)
    try:
        file_store.put(settings["store_key"], dumps_aggregate(aggregate))
    except WriteError as e:
        _print_errors([e])
        raise typer.Exit(code=2)
    typer.echo(
        f"OK: imported {len(aggregate.products_by_id)} products (revision {file_store.revision()})"
    )


@app.command("export")
def export_cmd(
    ctx: typer.Context,
    out: str = typer.Option(..., "--out", help="Path to write the JSON export"),
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
) -> None:
    """Write the stored aggregate to a standalone JSON file."""
    settings = ctx.obj
    path = store or settings["store_path"]
    try:
        text = load_store_file(path, settings["store_key"])
    except StoreLoadError as e:
        _print_errors([e])
        raise typer.Exit(code=1)

    aggregate, errors = read_aggregate(text, file=path)
    if errors or aggregate is None:
        _print_errors(errors)
        raise typer.Exit(code=2)

    p = Path(out)
    if str(p.parent) not in (".", ""):
        p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(json.loads(dumps_aggregate(aggregate)), indent=2, sort_keys=True), encoding="utf-8")
    typer.echo(f"OK: wrote {out}")


@app.command("watch")
def watch(
    ctx: typer.Context,
    product_id: str = typer.Argument(..., help="Product id"),
    month: int | None = typer.Option(None, "--month"),
    year: int | None = typer.Option(None, "--year"),
    interval: float | None = typer.Option(None, "--interval", help="Poll interval in seconds"),
    iterations: int = typer.Option(0, "--iterations", help="Stop after N polls (0 = run until interrupted)"),
    store: str | None = typer.Option(None, "--store", help="Path to the store file"),
) -> None:
    """Follow a product's latest documents, re-rendering whenever the store changes."""
    settings = ctx.obj
    scope = _scope(settings, month, year)
    file_store = _open_store(settings, store)
    poll_every = interval if interval is not None else settings["poll_interval_seconds"]

    try:
        final = asyncio.run(_watch(file_store, settings["store_key"], product_id, scope, poll_every, iterations))
    except KeyboardInterrupt:
        return
    if final.status == "not_found" and final.not_found is not None:
        _fail_not_found(final.not_found)


async def _watch(
    file_store: FileStore,
    key: str,
    product_id: str,
    scope: MonthScope,
    interval: float,
    iterations: int,
) -> ViewState:
    bus = NotificationBus(file_store)
    last_printed: tuple[Any, ...] | None = None

    def on_change(view: ViewState) -> None:
        nonlocal last_printed
        if view.status != "ready":
            return
        fingerprint = (
            view.roadmap_version,
            view.latest_release_goal.id if view.latest_release_goal else None,
            view.latest_release_plan.id if view.latest_release_plan else None,
            view.release_notes_version,
            view.metrics,
        )
        if fingerprint == last_printed:
            return
        last_printed = fingerprint
        for line in _render_view(view):
            typer.echo(line)
        typer.echo("")

    reconciler = ViewStateReconciler(
        ProductAggregateLoader(file_store, key=key), bus, product_id, scope, on_change=on_change
    )
    try:
        state = await reconciler.mount()
        polls = 0
        while state.status != "not_found" and (iterations <= 0 or polls < iterations):
            await asyncio.sleep(interval)
            await asyncio.to_thread(file_store.poll)
            state = await reconciler.settle()
            polls += 1
        return state
    finally:
        reconciler.unmount()
        bus.close()


def _render_view(view: ViewState) -> list[str]:
    assert view.product is not None
    scope = view.scope
    lines = [f"Product: {view.product.name} ({view.product.id})"]
    lines.append(f"Portfolio: {view.portfolio.name if view.portfolio else '-'}")
    lines.append(f"Period: {period_label(scope)}")

    if view.latest_roadmap:
        lines.append(f"Roadmap {scope.year}: v{view.roadmap_version} {view.roadmap_link or ''}".rstrip())
    else:
        lines.append(f"Roadmap: {empty_state_message('roadmap', scope)}")

    goal = view.latest_release_goal
    if goal:
        lines.append(f"Release goals: v{goal.version} ({len(goal.goals)} goals)")
        for g in goal.goals:
            lines.append(f"  - {g.description} [{g.current_state} -> {g.target_state}]")
    else:
        lines.append(f"Release goals: {empty_state_message('release goals', scope)}")

    plan = view.latest_release_plan
    if plan:
        lines.append(f"Release plan: v{plan.version} ({len(plan.items)} items)")
        for i in plan.items:
            lines.append(f"  - {i.title} ({i.status or 'planned'})")
    else:
        lines.append(f"Release plan: {empty_state_message('release plan', scope)}")

    if view.latest_release_note:
        lines.append(f"Release notes: v{view.release_notes_version} {view.release_notes_link or ''}".rstrip())
    else:
        lines.append(f"Release notes: {empty_state_message('release notes', scope)}")

    if view.metrics:
        lines.append("Metrics:")
        for m in view.metrics:
            target = f" (target {m.monthly_target})" if m.monthly_target is not None else ""
            lines.append(f"  - {m.name}: {m.value}{target}")
    else:
        lines.append(f"Metrics: {empty_state_message('metrics', scope)}")
    return lines


def _view_payload(view: ViewState) -> dict[str, Any]:
    assert view.product is not None
    roadmap = view.latest_roadmap
    goal = view.latest_release_goal
    plan = view.latest_release_plan
    note = view.latest_release_note
    return {
        "tool": "portal",
        "command": "show",
        "ok": True,
        "product": {"id": view.product.id, "name": view.product.name},
        "portfolio": {"id": view.portfolio.id, "name": view.portfolio.name} if view.portfolio else None,
        "period": {"month": view.scope.month, "year": view.scope.year},
        "roadmap": {"id": roadmap.id, "version": roadmap.version, "link": roadmap.link} if roadmap else None,
        "release_goal": {"id": goal.id, "version": goal.version, "goal_count": len(goal.goals)}
        if goal
        else None,
        "release_plan": {"id": plan.id, "version": plan.version, "item_count": len(plan.items)}
        if plan
        else None,
        "release_note": {"id": note.id, "version": format_version(note.version), "link": note.link}
        if note
        else None,
        "metrics": [
            {
                "name": m.name,
                "value": m.value,
                "monthly_target": m.monthly_target,
                "annual_target": m.annual_target,
            }
            for m in view.metrics
        ],
    }


def _scope(settings: dict[str, Any], month: int | None, year: int | None) -> MonthScope:
    m = month if month is not None else settings["default_month"]
    y = year if year is not None else settings["default_year"]
    if not 1 <= m <= 12:
        _print_errors(
            [AggregateValidationError(code="E_INVALID_SCOPE", message=f"month must be 1-12, got {m}", path="month")]
        )
        raise typer.Exit(code=2)
    return MonthScope(month=m, year=y)


def _check_format(format: str, code: str) -> None:
    if format not in ("text", "json"):
        _print_errors(
            [
                AggregateValidationError(
                    code=code,
                    message=f"unknown format: {format} (choose one of: text, json)",
                    file=None,
                    path="format",
                )
            ]
        )
        raise typer.Exit(code=2)


def _check_kind(kind: str) -> None:
    if kind not in VERSIONED_KINDS:
        _print_errors(
            [
                AggregateValidationError(
                    code="E_UNKNOWN_KIND",
                    message=f"unknown kind: {kind} (choose one of: {', '.join(VERSIONED_KINDS)})",
                    path="kind",
                )
            ]
        )
        raise typer.Exit(code=2)


def _open_store(settings: dict[str, Any], store: str | None) -> FileStore:
    return FileStore(store or settings["store_path"])


def _fail_not_found(result: NotFound) -> NoReturn:
    if result.reason == "malformed_aggregate":
        _print_errors(list(result.errors))
        err = StoreLoadError(
            code="E_MALFORMED_AGGREGATE",
            message=f"stored aggregate is invalid; cannot resolve {result.product_id}",
            path="product_id",
        )
    else:
        err = StoreLoadError(
            code="E_PRODUCT_NOT_FOUND",
            message=f"product not found: {result.product_id} ({result.reason})",
            path="product_id",
        )
    _print_errors([err])
    raise typer.Exit(code=1)


def _print_errors(errors: list[PortalError]) -> None:
    errors_sorted = sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))
    for e in errors_sorted:
        typer.echo(str(e), err=True)


def main() -> None:
    app(prog_name="portal")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()
