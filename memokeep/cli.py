"""
CLI for inspecting and driving the memo enrichment pipeline.

Usage:
    memokeep status MEMO_ID
    memokeep jobs --kind title --failed
    memokeep retry --kind distill
    memokeep pending
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .analysis_cache import AVAILABLE_IN_STORE
from .api import Pipeline
from .jobs import JOB_KINDS, Job
from .logging_config import configure_quiet_mode, enable_debug_mode, verbose_from_env
from .types import format_utc_timestamp, state_error, state_text

# Configure quiet mode by default (suppress HTTP client chatter)
# Set MEMOKEEP_VERBOSE=1 to enable debug mode via environment
if verbose_from_env():
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="memokeep",
    help="Background enrichment for voice memos.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="MEMOKEEP_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Background enrichment for voice memos."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

KindOption = Annotated[
    str,
    typer.Option(
        "--kind", "-k",
        help="Job kind: title or distill",
    )
]


def _get_pipeline() -> Pipeline:
    """Open the pipeline for the selected store, handling errors gracefully."""
    try:
        return Pipeline(_get_store_override())
    except (ValueError, OSError) as e:
        typer.echo(f"Error opening store: {e}", err=True)
        raise typer.Exit(1)


def _check_kind(kind: str) -> str:
    if kind not in JOB_KINDS:
        typer.echo(f"Unknown job kind: {kind} (expected one of: {', '.join(JOB_KINDS)})", err=True)
        raise typer.Exit(1)
    return kind


def _job_to_dict(job: Job) -> dict:
    return {
        "memo_id": job.memo_id,
        "status": job.status.value,
        "mode": job.mode,
        "created_at": format_utc_timestamp(job.created_at),
        "updated_at": format_utc_timestamp(job.updated_at),
        "retry_count": job.retry_count,
        "last_error": job.last_error,
        "next_retry_at": format_utc_timestamp(job.next_retry_at) if job.next_retry_at else None,
        "failure_reason": job.failure_reason.value if job.failure_reason else None,
    }


def _format_job(job: Job) -> str:
    line = f"{job.memo_id}  {job.status.value:<10}"
    if job.mode:
        line += f"  {job.mode}"
    if job.retry_count:
        line += f"  retries={job.retry_count}"
    if job.failure_reason:
        line += f"  [{job.failure_reason.value}]"
    if job.last_error:
        line += f"  {job.last_error}"
    return line


def _echo(data, text: str) -> None:
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(text)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def status(
    memo_id: Annotated[str, typer.Argument(help="Memo ID")],
):
    """Show transcription, job and analysis status for one memo."""
    with _get_pipeline() as pipeline:
        state = pipeline.transcriptions.get_state(memo_id)
        title_job = pipeline.title_jobs.job_for(memo_id)
        distill_job = pipeline.distill_jobs.job_for(memo_id)
        analyses = pipeline.analysis.get_all(memo_id)

        text = state_text(state)
        data = {
            "memo_id": memo_id,
            "transcription": {
                "status": state.status,
                "chars": len(text) if text is not None else None,
                "error": state_error(state),
            },
            "title_job": _job_to_dict(title_job) if title_job else None,
            "distill_job": _job_to_dict(distill_job) if distill_job else None,
            "analyses": sorted(mode.value for mode in analyses),
        }

        lines = [f"{memo_id}", f"  transcription: {state.status_text}"]
        if text is not None:
            lines[-1] += f" ({len(text)} chars)"
        if state_error(state):
            lines.append(f"  error: {state_error(state)}")
        lines.append(f"  title job: {_format_job(title_job) if title_job else 'none'}")
        lines.append(f"  distill job: {_format_job(distill_job) if distill_job else 'none'}")
        for mode, value in analyses.items():
            where = "stored" if value is AVAILABLE_IN_STORE else "cached"
            lines.append(f"  analysis: {mode.value} ({where})")
        _echo(data, "\n".join(lines))


@app.command()
def jobs(
    kind: KindOption = "title",
    failed: Annotated[bool, typer.Option(
        "--failed", "-f",
        help="Only jobs in failed (dead letter) status",
    )] = False,
):
    """List background jobs of one kind."""
    _check_kind(kind)
    with _get_pipeline() as pipeline:
        repository = pipeline.job_repository(kind)
        listed = repository.list_failed() if failed else repository.fetch_all()
        stats = repository.stats()
        data = {"kind": kind, "stats": stats, "jobs": [_job_to_dict(job) for job in listed]}
        lines = [_format_job(job) for job in listed]
        lines.append(
            f"{kind}: {stats['total']} jobs ({stats['queued']} queued, "
            f"{stats['processing']} processing, {stats['completed']} completed, "
            f"{stats['failed']} failed)"
        )
        _echo(data, "\n".join(lines))


@app.command()
def retry(
    kind: KindOption = "title",
):
    """Reset failed jobs back to queued with a fresh retry budget."""
    _check_kind(kind)
    with _get_pipeline() as pipeline:
        count = pipeline.job_repository(kind).retry_failed()
        _echo({"kind": kind, "reset": count}, f"Reset {count} failed {kind} jobs.")


@app.command()
def pending(
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Maximum jobs per kind to process",
    )] = 10,
    follow: Annotated[bool, typer.Option(
        "--follow",
        help="Keep processing until interrupted",
    )] = False,
):
    """
    Process pending title and distill jobs.

    Requires an enrichment API (MEMOKEEP_API_URL or [remote] api_url).
    """
    pipeline = _get_pipeline()
    if not pipeline.config.remote.enabled:
        pipeline.close()
        typer.echo("No enrichment API configured. Set MEMOKEEP_API_URL.", err=True)
        raise typer.Exit(1)

    async def _run() -> Optional[dict]:
        try:
            pipeline.resume_pending()
            if follow:
                await pipeline.run()
                return None
            return await pipeline.process_pending(limit=limit)
        finally:
            await pipeline.aclose()

    try:
        result = asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Stopped.", err=True)
        return
    if result is None:
        return
    lines = []
    for kind, counts in result.items():
        lines.append(
            f"{kind}: {counts['processed']} done, {counts['requeued']} requeued, "
            f"{counts['failed']} failed, {counts['abandoned']} dropped"
        )
        lines.extend(f"  {error}" for error in counts["errors"])
    _echo(result, "\n".join(lines))


@app.command()
def history(
    memo_id: Annotated[str, typer.Argument(help="Memo ID")],
):
    """Show every analysis saved for a memo, oldest first."""
    with _get_pipeline() as pipeline:
        entries = pipeline.analysis.history(memo_id)
        data = [{"mode": mode.value, "timestamp": format_utc_timestamp(ts)} for mode, ts in entries]
        if not entries:
            _echo(data, f"No analyses for {memo_id}.")
            return
        _echo(data, "\n".join(f"{format_utc_timestamp(ts)}  {mode.display_name}" for mode, ts in entries))


@app.command("config")
def config_cmd():
    """Show the store configuration."""
    with _get_pipeline() as pipeline:
        config = pipeline.config
        data = {
            "path": str(config.path),
            "config_file": str(config.config_path),
            "database": str(config.database_path),
            "version": config.version,
            "created": config.created,
            "retry": {
                "max_retries": config.retry.max_retries,
                "backoff_base": config.retry.backoff_base,
                "backoff_max": config.retry.backoff_max,
                "poll_interval": config.retry.poll_interval,
            },
            "remote": {
                "api_url": config.remote.api_url or None,
                "api_key": "set" if config.remote.api_key else None,
            },
        }
        lines = [
            f"store: {config.path}",
            f"config: {config.config_path}",
            f"retries: {config.retry.max_retries} "
            f"(backoff {config.retry.backoff_base:g}s to {config.retry.backoff_max:g}s)",
            f"remote: {config.remote.api_url or 'not configured'}",
        ]
        _echo(data, "\n".join(lines))


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="memokeep CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
