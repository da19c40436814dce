"""
Main CLI entry point for Event Import Pipeline

Provides command-line access to the URL fetch cache, the stage graph, unique
ID generation, remote source fetching and end-to-end file imports.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import click

from ..core.config import PipelineConfig, load_config
from ..core.exceptions import ConfigurationError, ImportPipelineError
from ..core.pipeline import ImportPipeline
from ..models.import_job import ProcessingStage, VALID_STAGE_TRANSITIONS, can_transition_to, get_valid_transitions
from ..services.cache import CacheManager
from ..services.id_generation import IdGenerationService
from ..services.url_fetch import FetchOptions, fetch_with_retry
from ..services.url_fetch_cache import UrlFetchCache
from ..utils.logger import setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--log-level', '-l', default=None, help='Log level (defaults to the configured level)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, log_level, verbose):
    """Event Import Pipeline CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    try:
        pipeline_config = load_config(config)
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e.message}", err=True)
        sys.exit(1)

    # Set up logging
    logger = setup_logger(level=log_level or pipeline_config.log_level, structured=not verbose)
    ctx.obj['logger'] = logger

    ctx.obj['config'] = pipeline_config
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def cache(ctx):
    """URL fetch cache and generic cache commands"""
    pass


@cli.group()
@click.pass_context
def stages(ctx):
    """Import job stage machine commands"""
    pass


@cli.group()
@click.pass_context
def ids(ctx):
    """Unique ID generation commands"""
    pass


def _parse_json_option(value: Optional[str], name: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint=name)


def _url_fetch_cache(config: PipelineConfig) -> UrlFetchCache:
    return UrlFetchCache(config.url_fetch_cache)


def _generic_cache_manager(config: PipelineConfig) -> CacheManager:
    return CacheManager(config.cache.model_copy(update={"cleanup_interval_ms": 0}))


# Cache Commands
@cache.command('stats')
@click.option('--generic', is_flag=True, help='Use the generic cache instead of the URL fetch cache')
@click.pass_context
def cache_stats(ctx, generic):
    """Show cache statistics"""

    async def _stats():
        config = ctx.obj['config']
        if generic:
            manager = _generic_cache_manager(config)
            try:
                manager.get_cache("default")
                stats = await manager.get_all_stats()
            finally:
                await manager.shutdown_all()
        else:
            async with _url_fetch_cache(config) as url_cache:
                stats = await url_cache.get_stats()
        click.echo(json.dumps(stats, indent=2))

    asyncio.run(_stats())


@cache.command('clear')
@click.option('--generic', is_flag=True, help='Use the generic cache instead of the URL fetch cache')
@click.option('--user-id', help='Only clear entries cached for this user (URL fetch cache)')
@click.pass_context
def cache_clear(ctx, generic, user_id):
    """Remove cached entries"""

    async def _clear():
        config = ctx.obj['config']
        if generic:
            manager = _generic_cache_manager(config)
            try:
                manager.get_cache("default")
                cleared = await manager.clear_all()
            finally:
                await manager.shutdown_all()
        else:
            async with _url_fetch_cache(config) as url_cache:
                if user_id:
                    cleared = await url_cache.invalidate_for_user(user_id)
                else:
                    cleared = await url_cache.clear()
        click.echo(f"Cleared {cleared} cache entries")

    asyncio.run(_clear())


@cache.command('cleanup')
@click.option('--generic', is_flag=True, help='Use the generic cache instead of the URL fetch cache')
@click.pass_context
def cache_cleanup(ctx, generic):
    """Remove expired entries"""

    async def _cleanup():
        config = ctx.obj['config']
        if generic:
            manager = _generic_cache_manager(config)
            try:
                manager.get_cache("default")
                removed = await manager.cleanup_all()
            finally:
                await manager.shutdown_all()
        else:
            async with _url_fetch_cache(config) as url_cache:
                removed = await url_cache.cleanup()
        click.echo(f"Removed {removed} expired cache entries")

    asyncio.run(_cleanup())


# Stage Commands
@stages.command('graph')
@click.pass_context
def stages_graph(ctx):
    """Print the stage transition graph"""
    for stage, targets in VALID_STAGE_TRANSITIONS.items():
        if targets:
            click.echo(f"{stage.value} -> {', '.join(target.value for target in targets)}")
        else:
            click.echo(f"{stage.value} (terminal)")

    if ctx.obj['verbose']:
        click.echo()
        click.echo("Every stage may stay where it is or move to 'failed'.")


@stages.command('validate')
@click.argument('from_stage')
@click.argument('to_stage')
@click.pass_context
def stages_validate(ctx, from_stage, to_stage):
    """Check whether FROM_STAGE -> TO_STAGE is allowed"""
    if can_transition_to(from_stage, to_stage):
        click.echo(f"valid: {from_stage} -> {to_stage}")
        return

    click.echo(f"invalid: {from_stage} -> {to_stage}", err=True)
    allowed = get_valid_transitions(from_stage)
    if allowed:
        click.echo(f"allowed from {from_stage}: {', '.join(stage.value for stage in allowed)}", err=True)
    sys.exit(1)


# ID Commands
@ids.command('generate')
@click.option('--dataset-id', required=True, help='Dataset the row belongs to')
@click.option('--strategy-json', required=True, help='ID strategy as JSON')
@click.option('--row-json', required=True, help='Row data as JSON')
@click.pass_context
def ids_generate(ctx, dataset_id, strategy_json, row_json):
    """Generate the unique ID for one row"""
    strategy = _parse_json_option(strategy_json, '--strategy-json')
    row = _parse_json_option(row_json, '--row-json')
    if not isinstance(row, dict):
        raise click.BadParameter("row must be a JSON object", param_hint='--row-json')

    try:
        result = IdGenerationService().generate(row, dataset_id, strategy)
    except ImportPipelineError as e:
        click.echo(f"Error generating ID: {e.message}", err=True)
        sys.exit(1)

    click.echo(json.dumps(result.to_dict(), indent=2))
    if result.error:
        sys.exit(1)


# Fetch Command
@cli.command('fetch')
@click.argument('url')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the fetched data to this file')
@click.option('--no-cache', is_flag=True, help='Bypass the URL fetch cache')
@click.option('--force-revalidate', is_flag=True, help='Revalidate a cached response with the origin')
@click.option('--bearer-token', help='Bearer token for the Authorization header')
@click.option('--user-id', help='Scope the cached response to this user')
@click.pass_context
def fetch(ctx, url, output, no_cache, force_revalidate, bearer_token, user_id):
    """Fetch URL, detect its file type and report hash, size and cache status"""

    async def _fetch():
        config = ctx.obj['config']
        options = FetchOptions.from_config(
            config.fetch,
            use_cache=not no_cache,
            force_revalidate=force_revalidate,
            user_id=user_id,
            auth={"type": "bearer", "bearerToken": bearer_token} if bearer_token else None,
        )

        try:
            async with _url_fetch_cache(config) as url_cache:
                result = await fetch_with_retry(url, url_cache, options)
        except ImportPipelineError as e:
            click.echo(f"Error fetching {url}: {e.message}", err=True)
            sys.exit(1)

        if output:
            async with aiofiles.open(output, "wb") as f:
                await f.write(result.data)

        click.echo(f"URL: {url}")
        click.echo(f"Status: {result.status}")
        click.echo(f"Type: {result.mime_type} ({result.file_extension})")
        click.echo(f"Size: {result.size} bytes")
        click.echo(f"SHA-256: {result.data_hash}")
        click.echo(f"Cache: {result.cache_status or 'N/A'}")
        click.echo(f"Attempts: {result.attempts}")
        if output:
            click.echo(f"Saved to: {output}")

    asyncio.run(_fetch())


# Run Command
@cli.command('run')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--dataset-json', help='Dataset document as JSON')
@click.option('--id-field', help='Column holding an external ID (shortcut for an external strategy)')
@click.option('--batch-size', type=int, help='Rows per create-events batch')
@click.pass_context
def run(ctx, file, dataset_json, id_field, batch_size):
    """Import FILE end to end through the in-memory pipeline"""

    async def _run():
        config: PipelineConfig = ctx.obj['config']
        if batch_size:
            config = config.model_copy(update={
                "batch": config.batch.model_copy(update={"event_creation": batch_size})
            })

        dataset: Dict[str, Any] = _parse_json_option(dataset_json, '--dataset-json') or {}
        if id_field:
            dataset["idStrategy"] = {"type": "external", "externalIdPath": id_field}
        dataset.setdefault("name", Path(file).stem)
        dataset.setdefault("idStrategy", {"type": "auto"})

        pipeline = ImportPipeline(config)
        await pipeline.start(maintenance_interval_ms=0)
        try:
            job = await pipeline.import_file(dataset, str(Path(file).absolute()))
        finally:
            await pipeline.stop()

        click.echo(f"Import job: {job['id']}")
        click.echo(f"Stage: {job['stage']}")
        if job.get("results"):
            click.echo(f"Results: {json.dumps(job['results'])}")
        summary = (job.get("duplicates") or {}).get("summary")
        if summary:
            click.echo(f"Duplicates: {json.dumps(summary)}")
        if ctx.obj['verbose'] and job.get("errors"):
            click.echo("Errors:")
            click.echo(json.dumps(job["errors"], indent=2))

        if job['stage'] != ProcessingStage.COMPLETED.value:
            sys.exit(1)

    asyncio.run(_run())


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
