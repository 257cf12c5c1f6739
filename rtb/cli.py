"""
CLI interface for the Roam third brain.

Usage:
    rtb import roam-export.json
    rtb update-embeddings
    rtb search "what did I read about sleep"
    rtb answer "how should I structure a weekly review?"
"""

import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .answer import render_answer_markdown
from .api import ThirdBrain
from .config import StoreConfig, default_config_path, load_or_create_config, with_provider_params
from .errors import ImportValidationError, RtbError, log_exception
from .importer import ImportStats
from .logging_config import configure_quiet_mode, enable_debug_mode
from .result_forest import render_search_markdown


# Configure quiet mode by default (suppress verbose library output)
# Set RTB_VERBOSE=1 to enable debug mode via environment
if os.environ.get("RTB_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


# Exit status for an embedding run that gave up after retries
EXIT_ABORTED = 2


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options, set by the main callback on every run
_db_path: Path = Path("rtb.db")
_config_path: Optional[Path] = None


app = typer.Typer(
    name="rtb",
    help="Semantic search and question answering over a Roam Research export.",
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
    db: Annotated[Path, typer.Option(
        "--db",
        envvar="RTB_DB",
        help="Path to the SQLite database",
    )] = Path("rtb.db"),
    config: Annotated[Optional[Path], typer.Option(
        "--config",
        envvar="RTB_CONFIG",
        help="Path to rtb.toml (default: beside the database)",
    )] = None,
):
    """Semantic search and question answering over a Roam Research export."""
    global _db_path, _config_path
    _db_path = db
    _config_path = config


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

OpenAIKeyOption = Annotated[
    Optional[str],
    typer.Option(
        "--openai-api-key",
        envvar="OPENAI_API_KEY",
        help="OpenAI API key, for providers named 'openai'",
        show_default=False,
    )
]

AnthropicKeyOption = Annotated[
    Optional[str],
    typer.Option(
        "--anthropic-api-key",
        envvar="ANTHROPIC_API_KEY",
        help="Anthropic API key, for a completion provider named 'anthropic'",
        show_default=False,
    )
]

OutputOption = Annotated[
    Optional[Path],
    typer.Option(
        "--output", "-o",
        help="Write Markdown output to this file instead of stdout",
    )
]


def apply_api_keys(
    config: StoreConfig,
    openai_api_key: Optional[str] = None,
    anthropic_api_key: Optional[str] = None,
) -> None:
    """Pass command-line keys to the configured providers that use them."""
    keys = {"openai": openai_api_key, "anthropic": anthropic_api_key}
    if keys.get(config.embedding.name):
        config.embedding = with_provider_params(
            config.embedding, api_key=keys[config.embedding.name],
        )
    if keys.get(config.completion.name):
        config.completion = with_provider_params(
            config.completion, api_key=keys[config.completion.name],
        )


def _get_brain(
    openai_api_key: Optional[str] = None,
    anthropic_api_key: Optional[str] = None,
) -> ThirdBrain:
    """Open the corpus, handling configuration errors gracefully."""
    config_path = _config_path or default_config_path(_db_path)
    try:
        config = load_or_create_config(config_path)
        apply_api_keys(config, openai_api_key, anthropic_api_key)
        return ThirdBrain(_db_path, config=config)
    except RtbError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _fail(e: Exception, command: str) -> None:
    """Report an expected failure cleanly, keeping the traceback in the crash log."""
    log_exception(e, context=f"rtb {command}")
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


def _write_output(text: str, output: Optional[Path]) -> None:
    if output is None:
        typer.echo(text, nl=False)
    else:
        output.write_text(text, encoding="utf-8")


def render_import_stats(stats: ImportStats) -> str:
    lines = [
        f"Pages: {stats.pages_seen} ({stats.pages_inserted} new, {stats.pages_updated} updated)",
        f"Items: {stats.items_seen} ({stats.items_inserted} new, "
        f"{stats.items_updated} updated, {stats.items_unchanged} unchanged)",
        f"Marked for embedding: {stats.items_marked_stale}",
    ]
    if stats.orphaned_embeddings_deleted:
        lines.append(f"Orphaned embeddings deleted: {stats.orphaned_embeddings_deleted}")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command("import")
def import_export(
    export: Annotated[Path, typer.Argument(
        help="Roam JSON export file",
        exists=True, dir_okay=False, readable=True,
    )],
):
    """Import (or re-import) a Roam JSON export."""
    with _get_brain() as brain:
        try:
            stats = brain.import_export(export)
        except ImportValidationError as e:
            log_exception(e, context="rtb import")
            where = f" at block {e.block_id!r}" if e.block_id else ""
            typer.echo(f"Error{where}: {e}", err=True)
            typer.echo(f"{e.pages_committed} pages were committed before the error.", err=True)
            raise typer.Exit(1)
        typer.echo(render_import_stats(stats))


@app.command("update-embeddings")
def update_embeddings(
    reset: Annotated[bool, typer.Option(
        "--reset",
        help="Delete all embeddings and re-embed everything (required to switch model)",
    )] = False,
    batch_size: Annotated[Optional[int], typer.Option(
        "--batch-size",
        min=1,
        help="Items per provider request (default from config)",
    )] = None,
    openai_api_key: OpenAIKeyOption = None,
):
    """Embed every item whose contents changed since it was last embedded."""
    with _get_brain(openai_api_key) as brain:
        try:
            result = brain.update_embeddings(reset=reset, batch_size=batch_size)
        except RtbError as e:
            _fail(e, "update-embeddings")
        if result.aborted:
            typer.echo(result.message(), err=True)
            raise typer.Exit(EXIT_ABORTED)
        typer.echo(result.message())


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")],
    k: Annotated[Optional[int], typer.Option(
        "-k",
        help="Number of results (default from config: 32)",
    )] = None,
    output: OutputOption = None,
    openai_api_key: OpenAIKeyOption = None,
):
    """Find the blocks most similar to QUERY, grouped by page."""
    with _get_brain(openai_api_key) as brain:
        try:
            pages = brain.search_forest(query, k)
        except (RtbError, ValueError) as e:
            _fail(e, "search")
        _write_output(render_search_markdown(query, pages), output)


@app.command()
def answer(
    query: Annotated[str, typer.Argument(help="Question to answer")],
    k: Annotated[Optional[int], typer.Option(
        "-k",
        help="Number of blocks to retrieve as context (default from config: 64)",
    )] = None,
    output: OutputOption = None,
    openai_api_key: OpenAIKeyOption = None,
    anthropic_api_key: AnthropicKeyOption = None,
):
    """Answer QUERY from your notes, citing the blocks used."""
    with _get_brain(openai_api_key, anthropic_api_key) as brain:
        try:
            result = brain.answer(query, k)
        except (RtbError, ValueError) as e:
            _fail(e, "answer")
        _write_output(render_answer_markdown(result), output)


@app.command("delete-page")
def delete_page(
    title: Annotated[str, typer.Argument(help="Page title")],
):
    """Delete a page, its blocks and their embeddings."""
    with _get_brain() as brain:
        if not brain.delete_page(title):
            typer.echo(f"Not found: {title}", err=True)
            raise typer.Exit(1)
        typer.echo(f"Deleted page: {title}")


@app.command("delete-item")
def delete_item(
    id: Annotated[str, typer.Argument(help="Block uid")],
):
    """Delete a block, its descendants and their embeddings."""
    with _get_brain() as brain:
        if not brain.delete_item(id):
            typer.echo(f"Not found: {id}", err=True)
            raise typer.Exit(1)
        typer.echo(f"Deleted item: {id}")


@app.command()
def stats():
    """Show corpus statistics."""
    with _get_brain() as brain:
        info = brain.stats()
    typer.echo(f"Database: {info['db_path']}")
    typer.echo(f"Pages: {info['pages']}")
    typer.echo(f"Items: {info['items']}")
    typer.echo(f"Embedded: {info['embedded']}")
    typer.echo(f"Pending: {info['pending']}")
    typer.echo(f"Embedding identity: {info['embedding_identity'] or 'none'}")
    if info["sibling_order_conflicts"]:
        typer.echo(f"Sibling order conflicts: {info['sibling_order_conflicts']}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="rtb CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
