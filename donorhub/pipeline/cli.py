"""
``flask pipeline ...`` commands.

Every stage can be run on its own; ``run-all`` chains them and prints the
integrity report. Failures surface as ``click.ClickException`` with a
truncated message.
"""

from __future__ import annotations

import json
import uuid
from typing import Iterable, Optional, Sequence

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Flask, has_app_context
from flask.cli import ScriptInfo
from sqlalchemy.exc import SQLAlchemyError

from .celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, get_celery_app
from .errors import PipelineError, QueryRejected, truncate_error
from .integrity import IntegrityReport, build_integrity_report
from .lineage import seed_source_systems
from .materializer import MaterializeResult, ViewMaterializer
from .mappings import ENTITY_ORDER
from .query_guard import GuardedQuery
from .raw_loader import IngestResult, RawIngestionLoader
from .resolver import IdentityResolver
from .runner import STAGES, PipelineRunner, StageOutcome
from .serving import VIEW_ORDER, ServingViewBuilder
from .settings import PipelineSettings
from .storage import get_blob_store
from .transform import EntityTransformer, MappingCounts

_VIEW_CHOICE = click.Choice(VIEW_ORDER + tuple(f"serving_{name}" for name in VIEW_ORDER))


def _load_app(ctx: click.Context) -> Flask:
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not has_app_context():
        ctx.with_resource(app.app_context())
    return app


def _settings(ctx: click.Context) -> PipelineSettings:
    return PipelineSettings.from_app(_load_app(ctx))


def _echo_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    materialized = [["" if value is None else str(value) for value in row] for row in rows]
    widths = [len(header) for header in headers]
    for row in materialized:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(value))
    line = "  ".join(header.ljust(widths[index]) for index, header in enumerate(headers))
    click.echo(line)
    click.echo("  ".join("-" * width for width in widths))
    for row in materialized:
        click.echo("  ".join(value.ljust(widths[index]) for index, value in enumerate(row)))


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _fail(label: str, exc: BaseException) -> click.ClickException:
    return click.ClickException(f"{label} failed: {truncate_error(exc)}")


@click.group(name="pipeline", invoke_without_command=True)
@click.pass_context
def pipeline_cli(ctx):
    """
    Donor warehouse pipeline: ingest -> transform -> resolve -> build-views -> materialize.

    Lists the pipeline stages when invoked without a subcommand.
    """
    _load_app(ctx)
    if ctx.invoked_subcommand is None:
        click.echo("Pipeline stages:")
        for stage in STAGES:
            click.echo(f"  - {stage}")


@pipeline_cli.command("sources")
@click.pass_context
def sources_command(ctx):
    """List registered sources and seed meta_source_systems."""
    settings = _settings(ctx)
    active = {policy.name for policy in settings.active_sources()}
    ids = seed_source_systems(settings.sources.values(), timeout_seconds=settings.point_timeout_seconds)
    _echo_table(
        ("id", "source", "title", "active", "extensions", "excluded prefixes"),
        (
            (
                ids.get(policy.name),
                policy.name,
                policy.title,
                "yes" if policy.name in active else "no",
                ",".join(policy.extensions),
                ",".join(policy.exclude_prefixes) or "-",
            )
            for policy in settings.sources.values()
        ),
    )


def _echo_ingest_result(result: IngestResult) -> None:
    detail = result.skip_reason or result.error or ""
    click.echo(f"  [{result.status:<8}] {result.blob_path} rows={result.rows_inserted} {detail}".rstrip())


def _enqueue_ingest(app: Flask, loader: RawIngestionLoader, source: Optional[str], only: Optional[str], offset: int):
    celery_app: Celery | None = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Pipeline Celery app is unavailable; initialise the pipeline extension first.")
    candidates, _ = loader.candidate_blobs(source)
    if only:
        candidates = [blob for blob in candidates if blob.path == only]
    candidates = candidates[offset:]
    task_ids = []
    for blob in candidates:
        try:
            async_result = celery_app.send_task(
                "pipeline.ingest_blob",
                kwargs={"blob_path": blob.path, "batch_id": loader.batch_id},
            )
        except Exception as exc:  # pragma: no cover - broker failures
            raise click.ClickException(f"Failed to enqueue {blob.path}: {truncate_error(exc)}") from exc
        task_ids.append({"blob_path": blob.path, "task_id": async_result.id})
    app.logger.info(
        "Queued %s ingest task(s)",
        len(task_ids),
        extra={"pipeline_stage": "ingest", "pipeline_batch_id": loader.batch_id},
    )
    click.echo(json.dumps({"batch_id": loader.batch_id, "status": "queued", "tasks": task_ids}))


@pipeline_cli.command("ingest")
@click.option("--source", help="Only ingest blobs of this source system.")
@click.option("--only", "only", help="Only ingest this blob path ({source}/{filename}).")
@click.option("--from", "offset", default=0, show_default=True, type=click.IntRange(min=0), help="Skip the first N candidate blobs.")
@click.option("--workers", type=click.IntRange(min=1), help="Concurrent files (defaults to PIPELINE_INGEST_WORKERS).")
@click.option("--queue", is_flag=True, help="Enqueue one worker task per blob instead of ingesting inline.")
@click.option("--summary-json", is_flag=True, help="Emit the summary as JSON.")
@click.pass_context
def ingest_command(ctx, source, only, offset, workers, queue, summary_json):
    """Load blobs from object storage into raw_records."""
    app = _load_app(ctx)
    settings = PipelineSettings.from_app(app)
    if source and settings.policy_for(source) is None:
        raise click.ClickException(f"Unknown source '{source}'.")
    loader = RawIngestionLoader(get_blob_store(app), settings, batch_id=str(uuid.uuid4()))

    if queue:
        _enqueue_ingest(app, loader, source, only, offset)
        return

    click.echo(f"Ingesting batch {loader.batch_id}")
    try:
        summary = loader.ingest_all(source=source, only=only, offset=offset, workers=workers, on_result=_echo_ingest_result)
    except (PipelineError, SQLAlchemyError) as exc:
        raise _fail("Ingest", exc) from exc

    counts = summary.counts()
    _echo_table(("metric", "value"), sorted(counts.items()))
    if summary_json:
        _echo_json(summary.as_dict())
    if summary.files_failed:
        raise click.ClickException(f"Ingest failed for {summary.files_failed} file(s).")


def _echo_mapping(result: MappingCounts) -> None:
    invalid = sum(result.invalid_values.values())
    click.echo(
        f"  {result.mapping:<36} read={result.rows_read} inserted={result.inserted} "
        f"updated={result.updated} skipped={result.rows_skipped} invalid={invalid}"
    )


@pipeline_cli.command("transform")
@click.option("--source", help="Only run mappings of this source system.")
@click.option("--only", "only", type=click.Choice(ENTITY_ORDER), help="Only transform this entity kind.")
@click.option("--from", "from_entity", type=click.Choice(ENTITY_ORDER), help="Resume at this entity kind.")
@click.option("--summary-json", is_flag=True, help="Emit the summary as JSON.")
@click.pass_context
def transform_command(ctx, source, only, from_entity, summary_json):
    """Type raw records into the silver entity tables."""
    settings = _settings(ctx)
    try:
        summary = EntityTransformer(settings).transform_all(
            source=source, only=only, from_entity=from_entity, on_result=_echo_mapping
        )
    except (PipelineError, SQLAlchemyError, ValueError) as exc:
        raise _fail("Transform", exc) from exc

    _echo_table(
        ("entity", "inserted", "updated", "skipped", "invalid"),
        (
            (entity, totals["inserted"], totals["updated"], totals["rows_skipped"], totals["invalid_values"])
            for entity, totals in summary.by_entity().items()
        ),
    )
    if summary_json:
        _echo_json(summary.as_dict())


@pipeline_cli.command("resolve")
@click.option("--summary-json", is_flag=True, help="Emit the summary as JSON.")
@click.pass_context
def resolve_command(ctx, summary_json):
    """Recompute the identity map from all silver contacts."""
    settings = _settings(ctx)
    try:
        result = IdentityResolver(settings).resolve_identities()
    except (PipelineError, SQLAlchemyError) as exc:
        raise _fail("Identity resolution", exc) from exc
    _echo_table(("metric", "value"), result.counts().items())
    if summary_json:
        _echo_json(result.as_dict())


@pipeline_cli.command("build-views")
@click.option("--only", "only", type=_VIEW_CHOICE, help="Rebuild this view (and the views selecting from it).")
@click.option("--summary-json", is_flag=True, help="Emit the summary as JSON.")
@click.pass_context
def build_views_command(ctx, only, summary_json):
    """Create or replace the serving views."""
    settings = _settings(ctx)
    try:
        summary = ServingViewBuilder(settings).define_views(only)
    except (PipelineError, SQLAlchemyError) as exc:
        raise _fail("View build", exc) from exc
    _echo_table(
        ("view", "status", "rows", "replaced", "error"),
        ((r.view, r.status, r.rows, r.replaced or "-", r.error or "") for r in summary.results),
    )
    if summary_json:
        _echo_json(summary.as_dict())
    if summary.failed:
        raise click.ClickException(f"{len(summary.failed)} view(s) failed to build.")


def _echo_materialized(result: MaterializeResult) -> None:
    suffix = f" ({result.error})" if result.error else ""
    click.echo(f"  [{result.status:<12}] {result.view} rows={result.rows}{suffix}")


@pipeline_cli.command("materialize")
@click.option("--only", "only", type=_VIEW_CHOICE, help="Only materialize this view.")
@click.option("--skip", "skip", type=_VIEW_CHOICE, multiple=True, help="Leave this view unmaterialized (repeatable).")
@click.option("--from", "from_view", type=_VIEW_CHOICE, help="Resume at this view.")
@click.option("--summary-json", is_flag=True, help="Emit the summary as JSON.")
@click.pass_context
def materialize_command(ctx, only, skip, from_view, summary_json):
    """Convert serving views into indexed tables in dependency order."""
    settings = _settings(ctx)
    try:
        summary = ViewMaterializer(settings).materialize_all(
            only=[only] if only else None,
            skip=skip,
            from_view=from_view,
            on_result=_echo_materialized,
        )
    except (PipelineError, SQLAlchemyError) as exc:
        raise _fail("Materialization", exc) from exc
    _echo_table(
        ("view", "status", "before", "after", "rows", "index failures"),
        (
            (r.view, r.status, r.state_before.value, r.state_after.value, r.rows, ",".join(r.index_failures) or "-")
            for r in summary.results
        ),
    )
    if summary_json:
        _echo_json(summary.as_dict())
    if summary.failed:
        failed = summary.failed[0]
        raise click.ClickException(f"Materializing {failed.view} failed: {failed.error}")


def _echo_report(report: IntegrityReport) -> None:
    for line in report.lines():
        click.echo(line)


@pipeline_cli.command("validate")
@click.option("--strict", is_flag=True, help="Exit non-zero when a check fails.")
@click.option("--summary-json", is_flag=True, help="Emit the report as JSON.")
@click.pass_context
def validate_command(ctx, strict, summary_json):
    """Print the warehouse integrity report."""
    settings = _settings(ctx)
    try:
        report = build_integrity_report(settings)
    except SQLAlchemyError as exc:
        raise _fail("Validation", exc) from exc
    _echo_report(report)
    if summary_json:
        _echo_json(report.as_dict())
    if strict and not report.passed:
        failing = [name for name, status in report.checks.items() if status != "PASS"]
        raise click.ClickException(f"Integrity checks failed: {', '.join(failing)}")


def _echo_stage(outcome: StageOutcome) -> None:
    status = "ok" if outcome.succeeded else "FAILED"
    click.echo(f"== {outcome.stage}: {status} ({outcome.duration_seconds:.1f}s)")
    if outcome.error:
        click.echo(f"   {outcome.error}")
    for key, value in outcome.counts.items():
        click.echo(f"   {key:<24} {value}")


@pipeline_cli.command("run-all")
@click.option("--from", "from_stage", type=click.Choice(STAGES), help="Resume at this stage.")
@click.option("--summary-json", is_flag=True, help="Emit the run summary as JSON.")
@click.pass_context
def run_all_command(ctx, from_stage, summary_json):
    """Run every stage in order, stopping at the first failure."""
    app = _load_app(ctx)
    runner = PipelineRunner(PipelineSettings.from_app(app), get_blob_store(app), on_stage=_echo_stage)
    click.echo(f"Pipeline batch {runner.batch_id}")
    summary = runner.run_all(from_stage=from_stage)
    if summary.integrity is not None:
        _echo_report(summary.integrity)
    if summary_json:
        _echo_json(summary.as_dict())
    failed = summary.failed_stage
    if failed is not None:
        raise click.ClickException(f"Pipeline stopped at {failed.stage}: {failed.error}")


@pipeline_cli.command("query")
@click.argument("sql")
@click.option("--max-rows", type=click.IntRange(min=1), help="Row cap (never above QUERY_MAX_ROWS).")
@click.option("--timeout", "timeout_seconds", type=click.IntRange(min=1), help="Timeout in seconds.")
@click.pass_context
def query_command(ctx, sql, max_rows, timeout_seconds):
    """Run a guarded read-only query against the serving layer."""
    settings = _settings(ctx)
    try:
        result = GuardedQuery(settings).execute(sql, max_rows=max_rows, timeout_seconds=timeout_seconds)
    except QueryRejected as exc:
        raise click.ClickException(f"Query rejected: {exc}") from exc
    except SQLAlchemyError as exc:
        raise _fail("Query", exc) from exc
    _echo_table(result.columns, result.rows)
    suffix = " (truncated)" if result.truncated else ""
    click.echo(f"{result.row_count} row(s){suffix}")


@pipeline_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the pipeline background worker."""
    app = _load_app(ctx)
    if not app.config.get("PIPELINE_WORKER_ENABLED"):
        click.echo(
            "Warning: PIPELINE_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


def _resolve_celery(app: Flask) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Pipeline Celery app is unavailable; initialise the pipeline extension first.")
    return celery_app


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    app.extensions.setdefault(EXTENSION_KEY, {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting pipeline worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    celery_app = _resolve_celery(_load_app(ctx))
    task = celery_app.tasks.get("pipeline.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'pipeline.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
