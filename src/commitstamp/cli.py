"""commitstamp CLI — trusted timestamps for git commits.

Usage:
    commitstamp digest [COMMIT]
    commitstamp stamp [COMMIT] --tsa https://freetsa.org/tsr
    commitstamp verify [COMMIT]
    commitstamp cache
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .cache import LTVCache
from .errors import CommitStampError
from .git import commit_digest, commit_message, load_config, resolve_commit
from .models import RepositoryConfig
from .trailers import extract_timestamps, format_trailer, format_version_trailer
from .tsa import DEFAULT_TSA_URL, TSAClient
from .validator import TokenValidator

console = Console()


@click.group()
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    help="Repository to operate on (default: current directory)",
)
@click.option(
    "--trust-anchors",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Directory of trusted root certificates (default: /etc/ssl/certs)",
)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Shared LTV cache directory (default: <git-dir>/commitstamp/ltv)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log engine activity")
@click.pass_context
def main(
    ctx: click.Context,
    repo: str,
    trust_anchors: Optional[str],
    cache_dir: Optional[str],
    verbose: bool,
) -> None:
    """commitstamp — RFC 3161 timestamps for git commits.

    Proves a commit existed at a point in time and keeps that proof
    verifiable after the TSA's certificates expire.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    repo_path = Path(repo)
    ctx.obj["repo"] = repo_path
    try:
        ctx.obj["config"] = load_config(
            repo_path,
            trust_anchor_dir=Path(trust_anchors) if trust_anchors else None,
            cache_dir=Path(cache_dir) if cache_dir else None,
        )
    except CommitStampError as exc:
        console.print(f"[red]Not a usable repository: {exc}[/]")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Digest
# ---------------------------------------------------------------------------


@main.command()
@click.argument("commit", default="HEAD")
@click.pass_context
def digest(ctx: click.Context, commit: str) -> None:
    """Print the timestamp digest of COMMIT."""
    repo: Path = ctx.obj["repo"]
    config: RepositoryConfig = ctx.obj["config"]
    try:
        click.echo(commit_digest(repo, commit, config))
    except CommitStampError as exc:
        console.print(f"[red]Cannot derive digest: {exc}[/]")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Stamp
# ---------------------------------------------------------------------------


@main.command()
@click.argument("commit", default="HEAD")
@click.option(
    "--tsa",
    "tsa_urls",
    multiple=True,
    help=f"TSA endpoint URL, repeatable (default: {DEFAULT_TSA_URL})",
)
@click.pass_context
def stamp(ctx: click.Context, commit: str, tsa_urls: tuple[str, ...]) -> None:
    """Obtain timestamp tokens for COMMIT and print the trailers.

    The output is meant to be appended to the commit message, e.g. with
    ``git commit --amend``.
    """
    repo: Path = ctx.obj["repo"]
    config: RepositoryConfig = ctx.obj["config"]
    client = TSAClient(config)

    try:
        commit_id = commit_digest(repo, commit, config)
    except CommitStampError as exc:
        console.print(f"[red]Cannot derive digest: {exc}[/]")
        sys.exit(1)

    trailers = [format_version_trailer()]
    for url in tsa_urls or (DEFAULT_TSA_URL,):
        with console.status(f"[bold]Submitting timestamp request to {url}...[/]"):
            try:
                token = client(commit_id, url)
            except CommitStampError as exc:
                console.print(f"[red]Timestamp failed: {exc}[/]")
                sys.exit(1)
        trailers.append(format_trailer(url, token))

    click.echo("\n".join(trailers))


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


@main.command()
@click.argument("commit", default="HEAD")
@click.pass_context
def verify(ctx: click.Context, commit: str) -> None:
    """Validate every timestamp token on COMMIT.

    Resolves and caches the certificate chain and CRLs of each TSA, then
    checks each token as of its own signing time.
    """
    repo: Path = ctx.obj["repo"]
    config: RepositoryConfig = ctx.obj["config"]

    try:
        commit_id = resolve_commit(repo, commit)
        expected = commit_digest(repo, commit, config)
        timestamps = extract_timestamps(commit_message(repo, commit))
    except CommitStampError as exc:
        console.print(f"[red]Cannot read commit: {exc}[/]")
        sys.exit(1)

    if timestamps.version < 0:
        console.print(f"[yellow]Commit {commit_id[:12]} carries no timestamp tokens.[/]")
        sys.exit(1)

    with LTVCache(config.cache_dir) as cache:
        validator = TokenValidator.from_config(config, cache=cache)
        with console.status("[bold]Validating timestamp tokens...[/]"):
            verdicts = validator.validate_commit(timestamps, expected)

    table = Table(title=f"Timestamps on {commit_id[:12]} (protocol v{timestamps.version})")
    table.add_column("TSA", style="cyan")
    table.add_column("Signed")
    table.add_column("Result")

    for verdict in verdicts:
        signed = (
            verdict.signing_time.strftime("%Y-%m-%d %H:%M:%S UTC")
            if verdict.signing_time
            else "—"
        )
        result = "[green]VALID[/]" if verdict.is_valid else f"[red]INVALID[/] {verdict.reason}"
        table.add_row(verdict.tsa_url or "—", signed, result)

    console.print(table)

    all_valid = all(v.is_valid for v in verdicts)
    console.print(
        Panel(
            f"[bold {'green' if all_valid else 'red'}]"
            f"{sum(v.is_valid for v in verdicts)} of {len(verdicts)} timestamps valid[/]\n\n"
            f"  Commit: {commit_id}\n"
            f"  Digest: {expected}",
            title="commitstamp verify",
            border_style="green" if all_valid else "red",
        )
    )
    if not all_valid:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@main.command("cache")
@click.pass_context
def cache_list(ctx: click.Context) -> None:
    """List signer certificates with cached chains."""
    config: RepositoryConfig = ctx.obj["config"]
    cache = LTVCache(config.cache_dir)

    table = Table(title=f"LTV cache: {config.cache_dir}")
    table.add_column("Signer", style="cyan")
    table.add_column("CRLs")
    for key, has_crls in cache.entries():
        table.add_row(key, "[green]yes[/]" if has_crls else "[yellow]no[/]")
    console.print(table)
