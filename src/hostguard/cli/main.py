"""hostguard command line: scan, detect, sanitize."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .. import __version__
from ..errors import ConfigError, NoDetectorsError
from ..models.finding import RiskLevel
from ..models.run import AnalysisRun

EXIT_OK = 0
EXIT_HIGH_RISK = 1
EXIT_CONFIG_ERROR = 12
EXIT_NO_DETECTORS = 13

RISK_COLORS = {
    RiskLevel.HIGH: "red",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.LOW: "green",
    RiskLevel.UNKNOWN: "dim",
}

console = Console()
err_console = Console(stderr=True)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _read_input(text: str) -> str:
    return sys.stdin.read() if text == "-" else text


def print_run(run: AnalysisRun) -> None:
    console.print()
    console.print(f"  [bold cyan]HOSTGUARD[/bold cyan] v{__version__}")
    console.print(f"  Host:    [white]{escape(run.hostname)}[/white] ({escape(run.os_version)})")

    for phase in run.phases:
        if phase.ran:
            triggers = f" [dim]({', '.join(phase.triggers)})[/dim]" if phase.triggers else ""
            console.print(f"  Phase:   {phase.name}: {len(phase.detectors)} detectors{triggers}")
        else:
            console.print(f"  Phase:   {phase.name}: [dim]skipped, {phase.skipped_reason}[/dim]")
    console.print()

    for key, result in run.results.items():
        color = RISK_COLORS[result.overall_risk]
        if result.failed:
            console.print(
                f"  [red]{result.status.value.upper()}[/red] "
                f"{escape(result.detector_name or key)}: {escape(result.error or '')}"
            )
        else:
            console.print(
                f"  [{color}]{result.overall_risk.value.upper():<7}[/{color}] "
                f"{escape(result.detector_name or key)}: {len(result.findings)} findings"
            )

    summary = run.summary
    console.print()
    console.print(
        f"  Findings: {summary.total_findings} "
        f"([red]{summary.high_count} high[/red], "
        f"[yellow]{summary.medium_count} medium[/yellow], "
        f"[green]{summary.low_count} low[/green])"
    )
    for correlation in run.correlations:
        console.print(f"  [magenta]Correlation[/magenta] {correlation.rule}: {escape(correlation.description)}")

    external = run.external_analysis
    if external is not None:
        if external.result is not None:
            console.print(f"  External analysis: [green]{external.status.value}[/green] ({external.result.model})")
        else:
            console.print(f"  External analysis: [yellow]{external.status.value}[/yellow] {escape(external.error or '')}")
        for match in external.firewall_matches:
            console.print(f"    [red]BLOCKED[/red] {match.pattern_name} x{match.count}")

    color = RISK_COLORS[run.overall_risk]
    console.print(f"\n  [{color}]Overall risk: {run.overall_risk.value.upper()}[/{color}]")
    console.print()


@click.group()
@click.version_option(__version__, prog_name="hostguard")
def cli() -> None:
    """hostguard - adaptive host security analysis with a privacy firewall."""


@cli.command()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML config file")
@click.option("--dry-run", is_flag=True, help="Use mock detectors (no host inspection, no API calls)")
@click.option("--sequential", is_flag=True, help="Run detectors one at a time")
@click.option("--max-parallel", type=click.IntRange(1, 10), help="Detectors per chunk")
@click.option("--timeout", type=int, help="Per-detector timeout in seconds")
@click.option("--ai-provider", type=click.Choice(["anthropic", "openai", "none"]))
@click.option("--ai-model", type=str, help="Model override")
@click.option("--objective", type=click.Choice(["integrated", "security", "performance"]))
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the run as JSON")
@click.option("--log-level", type=click.Choice(["debug", "info", "warning", "error"]))
@click.option("--fail-on-high", is_flag=True, help="Exit 1 when overall risk is high")
def scan(
    config_path: Optional[str],
    dry_run: bool,
    sequential: bool,
    max_parallel: Optional[int],
    timeout: Optional[int],
    ai_provider: Optional[str],
    ai_model: Optional[str],
    objective: Optional[str],
    output: Optional[str],
    log_level: Optional[str],
    fail_on_high: bool,
) -> None:
    """Run the core phase, the adaptive phase when triggered, and external analysis."""
    from ..core.archive import export_run_json
    from ..core.config import get_effective_config
    from ..core.orchestrator import resolve_registry, run_analysis
    from ..providers.base import get_gateway_provider

    overrides: dict = {"analysis": {}, "external_analysis": {}}
    if sequential:
        overrides["analysis"]["parallel_execution"] = False
    if max_parallel is not None:
        overrides["analysis"]["max_parallel_agents"] = max_parallel
    if timeout is not None:
        overrides["analysis"]["detector_timeout_seconds"] = timeout
    if ai_provider:
        overrides["external_analysis"]["provider"] = ai_provider
    if objective:
        overrides["external_analysis"]["objective"] = objective
    if log_level:
        overrides["logging"] = {"level": log_level}

    try:
        config = get_effective_config(Path(config_path) if config_path else None, overrides)
    except ConfigError as e:
        err_console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(config["logging"]["level"])

    try:
        registry = resolve_registry(config, dry_run=dry_run)
    except NoDetectorsError as e:
        err_console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(EXIT_NO_DETECTORS)
    except ConfigError as e:
        err_console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    provider = None
    if not dry_run:
        provider = get_gateway_provider(config, model_override=ai_model)
        if provider is not None:
            console.print(f"  [green]OK[/green] Provider: {provider.name} ({provider.model})")
    else:
        console.print("  Mode:    [yellow]DRY RUN[/yellow]")

    def progress(completed: int, total: int) -> None:
        console.print(f"  [dim]{completed}/{total} detectors complete[/dim]")

    run = asyncio.run(run_analysis(config, registry=registry, provider=provider, progress=progress, dry_run=dry_run))
    print_run(run)

    if output:
        path = export_run_json(run, Path(output))
        console.print(f"  Results: {path}")

    if fail_on_high and run.overall_risk == RiskLevel.HIGH:
        sys.exit(EXIT_HIGH_RISK)
    sys.exit(EXIT_OK)


@cli.command()
@click.argument("text")
def detect(text: str) -> None:
    """Check TEXT (or '-' for stdin) against the outbound firewall patterns."""
    from ..core.firewall import SensitiveDataFirewall

    report = SensitiveDataFirewall().detect(_read_input(text))
    if not report.has_sensitive_data:
        console.print("  [green]CLEAN[/green] No sensitive data detected")
        return

    for match in report.matches:
        samples = ", ".join(match.masked_samples)
        console.print(f"  [red]MATCH[/red] {match.pattern_name} x{match.count} [dim]{samples}[/dim]")


@cli.command()
@click.argument("text")
@click.option("--path", "as_path", is_flag=True, help="Treat input as a file path")
@click.option("--strict", is_flag=True, help="Outbound mode: also redact URLs, IPs, wallet paths and hosts")
def sanitize(text: str, as_path: bool, strict: bool) -> None:
    """Print TEXT (or '-' for stdin) with sensitive data redacted."""
    from ..core.firewall import SensitiveDataFirewall

    firewall = SensitiveDataFirewall()
    value = _read_input(text)
    if as_path:
        click.echo(firewall.sanitize_path(value.strip(), strict=strict))
    else:
        click.echo(firewall.sanitize_text(value, strict=strict))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
