"""
Candle Pipeline - CLI Application

Diagnostic commands over a pipeline built from settings.
"""
import asyncio
from datetime import datetime, timezone
from typing import List, Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from candle_pipeline.config import settings
from candle_pipeline.core.timeframes import normalize_timeframe
from candle_pipeline.models.candles import AggregatedCandle
from candle_pipeline.services import CandlePipeline
from candle_pipeline.logger import logger

app = typer.Typer(
    name="candle-pipeline",
    help="Candle cache and realtime aggregation CLI",
    add_completion=False,
)

console = Console()


def _fmt_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit")
):
    """
    Candle Pipeline CLI

    Cached historical candles with timeframe derivation, plus live candles from ticks.
    """
    if version:
        console.print(f"[cyan]{settings.APP_NAME}[/cyan] v{settings.APP_VERSION}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(Panel.fit(
            f"[bold cyan]{settings.APP_NAME}[/bold cyan]\n"
            f"[dim]v{settings.APP_VERSION}  cached + live candles[/dim]\n\n"
            "[yellow]Commands: candles, preload, stats, stream (see --help)[/yellow]",
            box=box.ROUNDED,
            border_style="cyan"
        ))


@app.command()
def candles(
    symbol: str = typer.Argument(..., help="Stock symbol, e.g. AAPL"),
    timeframe: str = typer.Argument("5m", help="Timeframe, e.g. 1m, 5m, 4h, 1D"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of candles to show"),
):
    """
    Show candles for SYMBOL, derived from cache when possible
    """
    async def _run():
        async with CandlePipeline.from_settings() as pipeline:
            return await pipeline.manager.get_candles(symbol.upper(), timeframe, limit)

    rows = asyncio.run(_run())
    if not rows:
        console.print(f"[yellow]No candles available for {symbol.upper()} {timeframe}[/yellow]")
        raise typer.Exit(code=1)

    table = Table(
        title=f"{symbol.upper()} {normalize_timeframe(timeframe)} ({len(rows)} candles)",
        box=box.SIMPLE_HEAVY,
    )
    table.add_column("Time (UTC)", style="cyan")
    for column in ("Open", "High", "Low", "Close", "Volume"):
        table.add_column(column, justify="right")

    for c in rows:
        table.add_row(
            _fmt_time(c.time),
            f"{c.open:.2f}",
            f"{c.high:.2f}",
            f"{c.low:.2f}",
            f"{c.close:.2f}",
            f"{c.volume:,.0f}",
        )

    console.print(table)


@app.command()
def preload(
    symbol: str = typer.Argument(..., help="Stock symbol to preload"),
):
    """
    Fetch and persist the base series for SYMBOL
    """
    async def _run():
        async with CandlePipeline.from_settings() as pipeline:
            await pipeline.manager.preload_symbol(symbol.upper())
            return pipeline.manager.get_cache_entry(symbol.upper())

    entry = asyncio.run(_run())
    if entry is None:
        console.print(f"[red]✗ Preload failed for {symbol.upper()}[/red] (see log file)")
        raise typer.Exit(code=1)

    console.print(
        f"[green]✓ Cached {len(entry.data)} {entry.base_timeframe} candles for {entry.symbol}[/green]"
    )


@app.command()
def stats(
    symbols: Optional[List[str]] = typer.Argument(None, help="Symbols whose persisted cache entries to load first"),
):
    """
    Show cache statistics after loading persisted entries for SYMBOLS

    Without symbols only this process's (empty) cache is reported.
    """
    async def _run():
        async with CandlePipeline.from_settings() as pipeline:
            for symbol in symbols or []:
                await pipeline.manager.ensure_cache_loaded(symbol.upper())
            return pipeline.manager.get_stats(), pipeline.aggregator.get_stats()

    cache_stats, aggregator_stats = asyncio.run(_run())

    table = Table(title="Candle Pipeline Stats", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Cached symbols", str(cache_stats.symbols))
    table.add_row("Cached candles", str(cache_stats.total_candles))
    table.add_row("Memory usage", cache_stats.memory_usage)
    table.add_row("In-flight fetches", str(cache_stats.inflight_requests))
    table.add_row("Tracked pairs", str(aggregator_stats.tracked_pairs))
    table.add_row("Buffered ticks", str(aggregator_stats.buffered_ticks))
    console.print(table)


@app.command()
def stream(
    symbols: List[str] = typer.Argument(..., help="Symbols to stream"),
    timeframe: List[str] = typer.Option(["1m"], "--timeframe", "-t", help="Timeframes to aggregate"),
):
    """
    Stream live candles built from trades until interrupted
    """
    def _print(symbol: str, candle: AggregatedCandle) -> None:
        status = "[green]closed[/green]" if candle.is_complete else "[dim]forming[/dim]"
        console.print(
            f"{symbol} {candle.timeframe} {_fmt_time(candle.time)} "
            f"O={candle.open:.2f} H={candle.high:.2f} L={candle.low:.2f} C={candle.close:.2f} {status}"
        )

    async def _run():
        cancel = asyncio.Event()
        async with CandlePipeline.from_settings() as pipeline:
            pipeline.aggregator.on_candle_update(_print)
            for sym in symbols:
                for tf in timeframe:
                    pipeline.aggregator.initialize_candle(sym.upper(), tf)
            try:
                await pipeline.stream(symbols, cancel)
            finally:
                cancel.set()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Stream interrupted by user")
        console.print("\n[yellow]Stream stopped[/yellow]")


if __name__ == "__main__":
    app()
