"""
Synthetic sales generator for exercising the POS sync queue.

Builds deterministic pseudo-random sales, writes them as JSON lines and,
unless told otherwise, queues them into the Postgres sync store in offline
mode so the next `possync status` (or a started orchestrator) sees a backlog.
"""

from __future__ import annotations

import asyncio
import random
import sys
import tempfile
import time
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import List

import typer

from possync.config import Settings, get_settings
from possync.domain.models import LineItem, PaymentBreakdown, SalesTransaction
from possync.infrastructure.gateway import HttpRemoteGateway
from possync.infrastructure.postgres_store import PostgresSyncStore
from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.queue_manager import TransactionQueueManager
from possync.utils.clock import utc_now
from possync.utils.logging import configure_logging

app = typer.Typer(help="Generate synthetic sales and queue them for sync.")

CATALOG = [
    ("ESP", "Espresso", "2.50"),
    ("LAT", "Latte", "3.75"),
    ("CAP", "Cappuccino", "3.50"),
    ("TEA", "Green Tea", "2.00"),
    ("MUF", "Blueberry Muffin", "2.25"),
    ("BAG", "Bagel", "2.25"),
    ("CRO", "Croissant", "2.95"),
    ("SAN", "Turkey Sandwich", "6.50"),
]
TAX_RATE = Decimal("0.08")
CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _generate_sales(count: int, seed: int, settings: Settings) -> List[SalesTransaction]:
    rng = random.Random(seed)
    now = utc_now()
    sales: List[SalesTransaction] = []
    for index in range(count):
        items = [
            LineItem(
                item_id=item_id,
                item_name=name,
                quantity=Decimal(rng.randint(1, 3)),
                unit_price=Decimal(price),
            )
            for item_id, name, price in rng.sample(CATALOG, rng.randint(1, 4))
        ]
        subtotal = sum((item.line_total for item in items), Decimal("0"))
        discount = _money(subtotal * Decimal("0.10")) if rng.random() < 0.1 else Decimal("0")
        tax = _money((subtotal - discount) * TAX_RATE)
        total = subtotal - discount + tax
        payment = (
            PaymentBreakdown(cash=total)
            if rng.random() < 0.4
            else PaymentBreakdown(card=total)
        )
        sales.append(
            SalesTransaction(
                id=f"gen-{seed}-{index:06d}",
                receipt_number=f"{settings.device_id}-{seed}-{index:06d}",
                branch_id=settings.branch_id,
                device_id=settings.device_id,
                cashier_id=f"cashier-{rng.randint(1, 5)}",
                items=items,
                subtotal_amount=subtotal,
                discount_amount=discount,
                tax_amount=tax,
                total_amount=total,
                payment=payment,
                created_at=now - timedelta(seconds=rng.randint(0, 8 * 3600)),
            )
        )
    return sales


def _write_jsonl(path: Path, sales: List[SalesTransaction]) -> None:
    with path.open("w", encoding="utf-8") as f:
        for sale in sales:
            f.write(sale.model_dump_json())
            f.write("\n")


async def _enqueue(settings: Settings, sales: List[SalesTransaction], priority: int) -> int:
    store = await PostgresSyncStore.open(settings, create_schema=True)
    try:
        breaker = CircuitBreaker(
            threshold=settings.circuit_breaker_threshold,
            reset_timeout=settings.circuit_breaker_reset_timeout,
        )
        gateway = HttpRemoteGateway(settings, key_store=store)
        queue = TransactionQueueManager(store, gateway, breaker, settings=settings)
        queue.set_online(False)
        try:
            for sale in sales:
                await queue.enqueue(sale, priority)
        finally:
            await gateway.aclose()
        return len(sales)
    finally:
        await store.close()


@app.command()
def main(
    count: int = typer.Option(
        500,
        "--count",
        "-n",
        help="Number of sales to generate.",
    ),
    seed: int = typer.Option(
        42,
        "--seed",
        help="Deterministic RNG seed.",
    ),
    priority: int = typer.Option(
        5,
        "--priority",
        "-p",
        help="Queue priority for the generated sales (1-10).",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Optional JSONL output path (if omitted, a temp file will be used).",
    ),
    no_load: bool = typer.Option(
        False,
        "--no-load",
        help="Only write JSONL; skip queueing into Postgres.",
    ),
) -> None:
    """
    Generate synthetic sales and optionally queue them in the Postgres sync store.
    """
    settings = get_settings()
    configure_logging(level="WARNING", json_logs=settings.log_json)
    start = time.perf_counter()
    if output:
        jsonl_path = output
        jsonl_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        tmpdir = Path(tempfile.mkdtemp(prefix="possync_sales_"))
        jsonl_path = tmpdir / "sales.jsonl"

    typer.echo(f"Generating {count:,} sales -> {jsonl_path} (seed={seed})")
    sales = _generate_sales(count, seed, settings)
    _write_jsonl(jsonl_path, sales)
    gen_duration = time.perf_counter() - start
    typer.echo(f"Generation completed in {gen_duration:.2f}s")

    if no_load:
        typer.echo("Skipping queueing (no-load flag set).")
        return

    load_start = time.perf_counter()
    typer.echo(f"Queueing into {settings.db_name} (offline)...")
    queued = asyncio.run(_enqueue(settings, sales, priority))
    load_duration = time.perf_counter() - load_start
    typer.echo(
        f"Queued {queued:,} sales in {load_duration:.2f}s "
        f"({queued / load_duration:,.0f} sales/s)."
    )


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
