#!/usr/bin/env -S uv run
"""
Queue Benchmark Tool for txqueue

Publishes jobs into a temporary SQLite database and drains them with
concurrent workers, reporting throughput and latency percentiles.

Usage:
    uv run tools/benchmark_queue.py
    uv run tools/benchmark_queue.py --jobs 5000 --workers 8
    uv run tools/benchmark_queue.py --help
"""
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "pydantic>=2.0",
#     "typer>=0.9.0",
#     "rich>=13.0",
# ]
# ///

from __future__ import annotations

import asyncio
import statistics
import sys
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from time import perf_counter

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Import txqueue from the local checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from txqueue import Job, QueueConfig, SQLiteDatabase, TxQueue

app = typer.Typer(
    help="Benchmark txqueue publishing and leasing",
    add_completion=False,
)

QUEUE = "benchmark"
TOPIC = "benchmark-task"


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkResult:
    """Results from a single benchmark scenario."""

    operation: str
    total_ops: int
    total_time: float
    latencies: list[float]  # seconds

    @property
    def ops_per_sec(self) -> float:
        return self.total_ops / self.total_time if self.total_time > 0 else 0.0

    def percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]

    @property
    def p50(self) -> float:
        return statistics.median(self.latencies) if self.latencies else 0.0

    @property
    def max_latency(self) -> float:
        return max(self.latencies) if self.latencies else 0.0


def format_latency_ms(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 1:
        return f"{ms:.3f}ms"
    elif ms < 10:
        return f"{ms:.2f}ms"
    return f"{ms:.1f}ms"


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


async def publish_sequential(q: TxQueue, n: int, payload: dict) -> list[float]:
    """Publish N jobs one after another on the pooled port."""
    latencies = []
    for _ in range(n):
        start = perf_counter()
        await q.publish(TOPIC, payload)
        latencies.append(perf_counter() - start)
    return latencies


async def publish_transactional(
    db: SQLiteDatabase, q: TxQueue, n: int, payload: dict
) -> list[float]:
    """Publish N jobs, each inside its own business transaction."""
    latencies = []
    for i in range(n):
        start = perf_counter()
        async with db.transaction() as tx:
            await tx.execute("INSERT INTO events (n) VALUES ($1)", [i])
            await q.publish(TOPIC, payload, port=tx)
        latencies.append(perf_counter() - start)
    return latencies


async def drain_with_workers(q: TxQueue, n: int, workers: int) -> list[float]:
    """
    Drain N jobs with `workers` concurrent workers.

    Latency is measured from the start of the drain to each handler call.
    """
    latencies: list[float] = []
    done = asyncio.Event()
    drain_start = perf_counter()

    async def handler(job: Job) -> None:
        latencies.append(perf_counter() - drain_start)
        if len(latencies) >= n:
            done.set()

    for _ in range(workers):
        await q.work(QUEUE, handler)
    await done.wait()
    await q.stop()
    return latencies


# ---------------------------------------------------------------------------
# Benchmark Runner
# ---------------------------------------------------------------------------


async def run_benchmarks(jobs: int, workers: int, payload_size: int, temp_dir: Path) -> list[BenchmarkResult]:
    results = []
    payload = {"data": "x" * payload_size}
    config = QueueConfig(poll_interval=timedelta(milliseconds=5))

    async with SQLiteDatabase(temp_dir / "bench.db", pool_size=max(4, workers)) as db:
        await db.execute("CREATE TABLE IF NOT EXISTS events (n INTEGER NOT NULL)")
        q = TxQueue(db, run_sweeper=False)
        await q.start()
        await q.create_queue(QUEUE, config)
        await q.subscribe(TOPIC, QUEUE)

        start = perf_counter()
        latencies = await publish_sequential(q, jobs, payload)
        results.append(BenchmarkResult("publish-seq", jobs, perf_counter() - start, latencies))

        start = perf_counter()
        latencies = await publish_transactional(db, q, jobs, payload)
        results.append(BenchmarkResult("publish-tx", jobs, perf_counter() - start, latencies))

        total = await q.queue_size(QUEUE)
        start = perf_counter()
        latencies = await drain_with_workers(q, total, workers)
        results.append(
            BenchmarkResult(f"drain-w{workers}", total, perf_counter() - start, latencies)
        )

    return results


# ---------------------------------------------------------------------------
# Result Formatting
# ---------------------------------------------------------------------------


def format_results(results: list[BenchmarkResult]) -> None:
    console = Console()
    console.print()
    console.print(Panel("[bold cyan]txqueue Benchmark Results (SQLite)[/bold cyan]", expand=False))
    console.print()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Operation", style="cyan", width=15)
    table.add_column("Ops/sec", justify="right", style="green")
    table.add_column("P50", justify="right")
    table.add_column("P95", justify="right")
    table.add_column("P99", justify="right")
    table.add_column("Max", justify="right")

    for result in results:
        table.add_row(
            result.operation,
            f"{result.ops_per_sec:.1f}",
            format_latency_ms(result.p50),
            format_latency_ms(result.percentile(0.95)),
            format_latency_ms(result.percentile(0.99)),
            format_latency_ms(result.max_latency),
        )

    console.print(table)
    console.print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@app.command()
def main(
    jobs: int = typer.Option(1000, "--jobs", "-n", help="Jobs published per scenario"),
    workers: int = typer.Option(4, "--workers", "-w", help="Concurrent workers draining the queue"),
    payload_size: int = typer.Option(1000, "--payload-size", help="Payload size in bytes"),
) -> None:
    """
    Benchmark txqueue on a temporary SQLite database.

    Measures publish throughput with and without a surrounding business
    transaction, then how fast K workers drain everything that was published.
    """
    with tempfile.TemporaryDirectory() as temp_dir_str:
        results = asyncio.run(run_benchmarks(jobs, workers, payload_size, Path(temp_dir_str)))
    format_results(results)


if __name__ == "__main__":
    app()
