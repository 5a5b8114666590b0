"""
ScrapeGate - CLI Entry Point

Scrape URLs through the resilient orchestrator and inspect egress points.
"""

import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from scrapegate.config import config
from scrapegate.errors import ConfigValidationError, ScrapeGateError
from scrapegate.egress.registry import EgressRegistry
from scrapegate.egress.wireguard import validate_registration
from scrapegate.models import ScrapeRequest
from scrapegate.orchestrator import Orchestrator


console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Configure logging with rich handler."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def load_urls_from_file(filepath: str) -> list[str]:
    """Load URLs from a text file (one per line)."""
    path = Path(filepath)
    if not path.exists():
        console.print(f"[red]File not found: {filepath}[/red]")
        sys.exit(1)

    urls = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                urls.append(line)

    return urls


def build_request(args: argparse.Namespace, url: str) -> ScrapeRequest:
    """Build a ScrapeRequest from CLI flags."""
    try:
        return ScrapeRequest(
            url=url,
            infinite_scroll=args.infinite_scroll,
            wait_for_network=args.wait_for_network,
            max_scrolls=args.max_scrolls,
            location=args.location,
            lightweight=args.lightweight,
            screenshot=args.screenshot,
            block_resources=not args.no_block_resources,
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(2)


def write_output(data, output: str | None) -> None:
    text = json.dumps(data, indent=2)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print(f"\n[green]Results written to: {output}[/green]")
    else:
        console.print_json(text)


async def scrape_async(args: argparse.Namespace) -> int:
    """Scrape one URL or a file of URLs."""
    urls = []
    if args.url:
        urls.append(args.url)
    if args.file:
        urls.extend(load_urls_from_file(args.file))

    if not urls:
        console.print("[red]No URLs provided. Use --url or --file[/red]")
        return 1

    requests = [build_request(args, url) for url in urls]

    async with Orchestrator() as orchestrator:
        if len(requests) == 1:
            try:
                result = await orchestrator.scrape(requests[0])
            except ScrapeGateError as e:
                console.print(f"\n[red]Error: {e}[/red]")
                return 1
            write_output(result.to_dict(), args.output)
        else:
            results = await orchestrator.run(requests, workers=args.workers)
            write_output([r.to_dict() for r in results], args.output)

        stats = orchestrator.get_stats()
        console.print("\n[bold]Final Statistics:[/bold]")
        for key, value in stats["orchestrator"].items():
            console.print(f"  {key}: {value}")

    return 0


async def egress_async(args: argparse.Namespace) -> int:
    """Inspect egress points."""
    if args.egress_command == "validate":
        path = Path(args.config_file)
        try:
            parsed = validate_registration(args.name or path.stem, args.location, path.read_text(encoding="utf-8"))
        except ConfigValidationError as e:
            console.print(f"[red]{e}[/red]")
            return 1
        console.print(f"[green]Configuration is valid[/green] (endpoint {parsed.endpoint})")
        return 0

    registry = EgressRegistry()
    if config.egress.seed_defaults and config.egress.private_key:
        registry.seed_defaults(config.egress.private_key)

    if args.egress_command == "health":
        summary = await registry.check_all_health()
        console.print(f"Healthy: {summary['healthy']}/{summary['total']}")

    table = Table(title="Egress points")
    for column in ("id", "name", "location", "endpoint", "healthy"):
        table.add_column(column)

    for point in registry.list_points():
        table.add_row(
            point.id,
            point.name,
            point.location,
            point.endpoint,
            "yes" if point.is_healthy else "no",
        )

    console.print(table)
    await registry.close()
    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="ScrapeGate - resilient scraping through challenges and rate limits",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s scrape --url https://example.com
  %(prog)s scrape --url https://example.com/feed --infinite-scroll --location de
  %(prog)s scrape --file urls.txt --workers 2 --output results.json
  %(prog)s egress health
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=config.log_level,
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # scrape
    scrape = subparsers.add_parser("scrape", help="Scrape URLs")
    scrape.add_argument("--url", "-u", help="Single URL to scrape")
    scrape.add_argument("--file", "-f", help="File containing URLs (one per line)")
    scrape.add_argument("--workers", "-w", type=int, default=3, help="Concurrent requests (default: 3)")
    scrape.add_argument("--infinite-scroll", action="store_true", help="Scroll until no new content loads")
    scrape.add_argument("--wait-for-network", action="store_true", help="Wait for network quiescence")
    scrape.add_argument("--max-scrolls", type=int, default=None, help="Maximum scroll iterations")
    scrape.add_argument("--location", help="Preferred egress location for failover (e.g. de)")
    scrape.add_argument("--lightweight", action="store_true", help="Plain HTTP fetch, no browser")
    scrape.add_argument("--screenshot", action="store_true", help="Return a PNG screenshot as the body")
    scrape.add_argument("--no-block-resources", action="store_true", help="Load images, fonts and media")
    scrape.add_argument("--output", "-o", help="Write JSON results to this file")

    # egress
    egress = subparsers.add_parser("egress", help="Inspect egress points")
    egress_commands = egress.add_subparsers(dest="egress_command", required=True)
    egress_commands.add_parser("list", help="List registered egress points")
    egress_commands.add_parser("health", help="Probe every egress point")
    validate = egress_commands.add_parser("validate", help="Validate a WireGuard configuration file")
    validate.add_argument("config_file", help="Path to the .conf file")
    validate.add_argument("--location", default="unknown", help="Location code")
    validate.add_argument("--name", help="Display name (defaults to the file name)")

    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        if args.command == "scrape":
            code = asyncio.run(scrape_async(args))
        else:
            code = asyncio.run(egress_async(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
