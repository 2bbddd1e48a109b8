"""memarchive CLI."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from memarchive.config import Config
from memarchive.exceptions import Busy, OracleTimeout, ValidationError
from memarchive.memory_vault import MemoryVault
from memarchive.oracle import JsonFileOracle

EXIT_BUSY = 2
EXIT_QUARANTINED = 3


def _get_vault(data_dir: str | None = None) -> MemoryVault:
    return MemoryVault(Config.load(data_dir))


@click.group()
@click.option("--data-dir", envvar="MEMARCHIVE_DATA_DIR", default=None, help="Memory root directory")
@click.option("--verbose", "-v", is_flag=True, help="Log warnings and session steps to stderr")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, verbose: bool) -> None:
    """memarchive: durable project memory."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show memory store status."""
    vault = _get_vault(ctx.obj.get("data_dir"))
    st = vault.status()
    click.echo("memarchive status")
    click.echo(f"  Root:              {st['data_dir']}")
    click.echo(f"  Semantic docs:     {st['semantic']}")
    click.echo(f"  Episodic docs:     {st['episodic']}")
    click.echo(f"  Quarantined:       {len(st['quarantined'])}")
    if st["index_published"]:
        form = "compacted" if st["index_compacted"] else "full"
        click.echo(f"  Clue index:        {form}, ~{st['index_tokens']} tokens")
    else:
        click.echo("  Clue index:        not published")


@main.command()
@click.argument("query")
@click.option("--top-k", "-k", default=None, type=int, help="Number of direct matches per namespace")
@click.pass_context
def retrieve(ctx: click.Context, query: str, top_k: int | None) -> None:
    """Answer what the store currently knows about QUERY."""
    vault = _get_vault(ctx.obj.get("data_dir"))
    if top_k is not None:
        vault.retrieval.config.top_k = top_k
    click.echo(vault.retrieve(query).render().rstrip())


@main.command()
@click.argument("transcript", type=click.Path(exists=True, dir_okay=False))
@click.option("--proposal", "-p", required=True, type=click.Path(exists=True, dir_okay=False),
              help="JSON file holding the extraction oracle's proposal")
@click.option("--timeout", "-t", default=None, type=float, help="Oracle timeout in seconds")
@click.pass_context
def archive(ctx: click.Context, transcript: str, proposal: str, timeout: float | None) -> None:
    """Run one archive session over TRANSCRIPT."""
    vault = _get_vault(ctx.obj.get("data_dir"))
    raw = Path(transcript).read_text(encoding="utf-8")
    try:
        result = vault.archive(raw, JsonFileOracle(proposal), timeout=timeout)
    except Busy as e:
        click.echo(f"Busy: {e}", err=True)
        sys.exit(EXIT_BUSY)
    except (OracleTimeout, ValidationError, ValueError) as e:
        raise click.ClickException(f"session aborted: {e}") from e
    click.echo(f"Session: {' -> '.join(s.value for s in result.history)}")
    if result.created:
        click.echo(f"Created: {', '.join(result.created)}")
    if result.updated:
        click.echo(f"Updated: {', '.join(result.updated)}")
    if result.consolidation and result.consolidation.merged:
        for survivor, absorbed in result.consolidation.merged.items():
            click.echo(f"Merged: {', '.join(absorbed)} -> {survivor}")
    if result.consolidation and result.consolidation.split:
        for original, facts in result.consolidation.split.items():
            click.echo(f"Split: {original} -> {', '.join(facts)}")
    if result.rejected:
        click.echo(f"Rejected units: {len(result.rejected)}")
        for message in result.rejected:
            click.echo(f"  {message}")
    if result.episodic_id:
        click.echo(f"Logged: episodic/{result.episodic_id}.md")


@main.command()
@click.pass_context
def reindex(ctx: click.Context) -> None:
    """Rebuild and publish the clue index."""
    vault = _get_vault(ctx.obj.get("data_dir"))
    try:
        index = vault.reindex()
    except Busy as e:
        click.echo(f"Busy: {e}", err=True)
        sys.exit(EXIT_BUSY)
    click.echo(f"Indexed {len(index.paths())} documents")
    if index.quarantined:
        click.echo(f"Quarantined: {', '.join(index.quarantined)}")


@main.command()
@click.pass_context
def clues(ctx: click.Context) -> None:
    """Print the clue index."""
    vault = _get_vault(ctx.obj.get("data_dir"))
    click.echo(vault.clues().render_markdown().rstrip())


@main.command(name="consolidate")
@click.pass_context
def consolidate_cmd(ctx: click.Context) -> None:
    """Split oversized documents and repair links store-wide."""
    vault = _get_vault(ctx.obj.get("data_dir"))
    try:
        report = vault.consolidate()
    except Busy as e:
        click.echo(f"Busy: {e}", err=True)
        sys.exit(EXIT_BUSY)
    if not report.changed:
        click.echo("Store is consistent; nothing to do.")
        return
    for original, facts in report.split.items():
        click.echo(f"Split: {original} -> {', '.join(facts)}")
    if report.links_added:
        click.echo(f"Back-links added: {report.links_added}")
    for source, target in report.dropped_edges:
        click.echo(f"Dropped dangling edge: {source} -> {target}")


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Report invariant violations without changing anything."""
    vault = _get_vault(ctx.obj.get("data_dir"))
    report = vault.check()
    if report.clean:
        click.echo("OK")
        return
    for doc_id in report.oversized:
        click.echo(f"oversized: {doc_id}")
    for source, target in report.asymmetric:
        click.echo(f"asymmetric: {source} -> {target}")
    for source, target in report.dangling:
        click.echo(f"dangling: {source} -> {target}")
    for path in report.quarantined:
        click.echo(f"quarantined: {path}")
    if report.quarantined:
        sys.exit(EXIT_QUARANTINED)


if __name__ == "__main__":
    main()
