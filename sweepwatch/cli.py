"""CLI entry point for the sweepwatch token rescue watcher.

Commands:
  sweepwatch run                      — Monitor configured wallets until interrupted
  sweepwatch wallet add ADDRESS       — Create or update a wallet configuration
  sweepwatch wallet list              — Show wallet configurations
  sweepwatch probe WALLET ASSET       — Register an asset and evaluate it now
  sweepwatch sweep WALLET ASSET       — Sweep a detected asset and wait for its receipt
  sweepwatch fees                     — Current fee price, recommendation, cost estimate
  sweepwatch status [--wallet]        — Network, sweep and transfer summary
  sweepwatch activity [--wallet]      — Recent activity feed
  sweepwatch emergency-stop           — Halt monitoring and deactivate configurations
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Awaitable, Callable

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from sweepwatch.config import WatcherConfig, load_config
from sweepwatch.engine.service import WatcherService
from sweepwatch.observability.logger import configure_logging, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _one_shot(cfg: WatcherConfig, fn: Callable[[WatcherService], Awaitable[Any]]) -> Any:
    """Start a service without background loops, run ``fn``, shut down."""
    async def _go() -> Any:
        service = WatcherService(cfg)
        await service.start(background=False, resume=False)
        try:
            return await fn(service)
        finally:
            await service.shutdown()
    return _run(_go())


def _fail(message: str) -> None:
    console.print(f"[red]❌ {message}[/red]")
    raise SystemExit(1)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Watch wallets and sweep tokens to safety the moment they become transferable."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt=cfg.observability.log_format,
        log_file=cfg.observability.log_file,
        force=True,
    )


# ─── RUN ─────────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Monitor every active wallet until interrupted."""
    cfg: WatcherConfig = ctx.obj["config"]

    console.print("[bold cyan]🛡  Starting sweepwatch[/bold cyan]")
    console.print(f"  RPC: {cfg.ledger.rpc_url}")
    console.print(f"  Scan interval: {cfg.detection.scan_interval_secs}s")
    console.print(f"  Seeded wallets: {len(cfg.wallets)}")
    console.print()

    service = WatcherService(cfg)
    try:
        _run(service.run_forever())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user.[/yellow]")


# ─── WALLETS ─────────────────────────────────────────────────────────

@cli.group()
def wallet() -> None:
    """Wallet configuration commands."""
    pass


@wallet.command("add")
@click.argument("address")
@click.option("--safe", "safe_address", required=True, help="Destination for swept tokens")
@click.option("--key-env", default="", help="Environment variable holding the private key")
@click.option("--strategy", default="standard", help="Fee strategy: slow | standard | fast")
@click.option("--min-usd", default=10.0, type=float, help="Minimum sweep value in USD")
@click.option("--no-auto-sweep", is_flag=True, help="Detect only; never sweep automatically")
@click.option("--inactive", is_flag=True, help="Store the configuration without monitoring")
@click.pass_context
def wallet_add(
    ctx: click.Context,
    address: str,
    safe_address: str,
    key_env: str,
    strategy: str,
    min_usd: float,
    no_auto_sweep: bool,
    inactive: bool,
) -> None:
    """Create or update a wallet configuration."""
    cfg: WatcherConfig = ctx.obj["config"]
    private_key = os.environ.get(key_env, "") if key_env else ""
    if key_env and not private_key:
        _fail(f"{key_env} is not set")

    async def _add(service: WatcherService) -> Any:
        return await service.configure_wallet(
            address,
            safe_address,
            private_key=private_key,
            fee_strategy=strategy,
            min_transfer_usd=min_usd,
            auto_sweep_enabled=not no_auto_sweep,
            is_active=not inactive,
        )

    try:
        record = _one_shot(cfg, _add)
    except ValueError as e:
        _fail(str(e))
        return
    console.print(f"[green]✅ Configured {record.wallet_address} → {record.safe_address}[/green]")


@wallet.command("list")
@click.pass_context
def wallet_list(ctx: click.Context) -> None:
    """Show wallet configurations."""
    cfg: WatcherConfig = ctx.obj["config"]

    async def _list(service: WatcherService) -> list[Any]:
        return service.db.list_wallet_configs()

    records = _one_shot(cfg, _list)

    table = Table(title=f"👛 Wallets ({len(records)})")
    table.add_column("Wallet", style="cyan")
    table.add_column("Safe address")
    table.add_column("Strategy")
    table.add_column("Min USD", justify="right")
    table.add_column("Auto-sweep")
    table.add_column("Active")
    table.add_column("Key")
    for r in records:
        table.add_row(
            r.wallet_address,
            r.safe_address,
            r.fee_strategy,
            f"${r.min_transfer_usd:,.2f}",
            "✅" if r.auto_sweep_enabled else "—",
            "✅" if r.is_active else "❌",
            "set" if r.private_key else "[red]missing[/red]",
        )
    console.print(table)


# ─── PROBE / SWEEP ───────────────────────────────────────────────────

@cli.command()
@click.argument("wallet_address")
@click.argument("asset")
@click.pass_context
def probe(ctx: click.Context, wallet_address: str, asset: str) -> None:
    """Register ASSET for WALLET and evaluate it immediately."""
    cfg: WatcherConfig = ctx.obj["config"]

    async def _probe(service: WatcherService) -> tuple[bool, Any]:
        held = await service.detector.register_and_probe_asset(wallet_address, asset)
        await service.poller.wait_all()
        detection = service.db.get_detection_by_asset(wallet_address.strip().lower(), asset.strip().lower())
        return held, detection

    try:
        held, detection = _one_shot(cfg, _probe)
    except ValueError as e:
        _fail(str(e))
        return

    if not held or detection is None:
        console.print("[yellow]⚠️  No balance found[/yellow]")
        return
    state = "[green]ENABLED[/green]" if detection.is_transferable else "[yellow]DISABLED[/yellow]"
    console.print(
        f"💰 {detection.balance} {detection.symbol} (${detection.usd_value:,.2f}), trading {state}"
    )


@cli.command()
@click.argument("wallet_address")
@click.argument("asset")
@click.option("--urgency", default=None, help="low | medium | high (default from config)")
@click.pass_context
def sweep(ctx: click.Context, wallet_address: str, asset: str, urgency: str | None) -> None:
    """Sweep a detected ASSET from WALLET and wait for the receipt."""
    cfg: WatcherConfig = ctx.obj["config"]
    chosen = urgency or cfg.sweep.manual_urgency

    async def _sweep(service: WatcherService) -> tuple[Any, Any]:
        result = await service.detector.manual_sweep(wallet_address, asset, urgency=chosen)
        if result is None or not result.submitted:
            return result, None
        with console.status("Waiting for receipt..."):
            await service.poller.wait_all()
        return result, service.db.get_transaction(result.sweep_id)

    try:
        result, tx = _one_shot(cfg, _sweep)
    except ValueError as e:
        _fail(str(e))
        return

    if result is None:
        _fail("No detection for this asset; run `sweepwatch probe` first")
        return
    if not result.submitted:
        _fail(f"Sweep {result.status}: {result.error or 'no transaction sent'}")
        return
    console.print(f"[green]✅ Submitted {result.tx_hash} at {result.fee_gwei} gwei[/green]")
    if tx is not None and tx.block_number is not None:
        console.print(f"  Block {tx.block_number}, gas {tx.gas_used}, cost {tx.gas_cost} ETH, {tx.status}")
    else:
        console.print("[yellow]  Receipt not seen yet[/yellow]")


# ─── FEES ────────────────────────────────────────────────────────────

@cli.command()
@click.option("--strategy", default="standard", help="slow | standard | fast")
@click.option("--urgency", default="medium", help="low | medium | high")
@click.option("--asset", default=None, help="Asset for a transfer cost estimate")
@click.option("--from", "from_addr", default=None, help="Sender for the cost estimate")
@click.option("--to", "to_addr", default=None, help="Recipient for the cost estimate")
@click.option("--amount", default=None, type=float, help="Amount for the cost estimate")
@click.pass_context
def fees(
    ctx: click.Context,
    strategy: str,
    urgency: str,
    asset: str | None,
    from_addr: str | None,
    to_addr: str | None,
    amount: float | None,
) -> None:
    """Show the current fee price and strategy advice."""
    cfg: WatcherConfig = ctx.obj["config"]

    async def _fees(service: WatcherService) -> dict[str, Any]:
        out: dict[str, Any] = {
            "fee_gwei": await service.fees.optimal_fee(strategy, urgency),
            "congestion": service.fees.congestion,
            "recommended": service.fees.recommend_strategy(),
            "delay": service.fees.should_delay(strategy),
            "strategies": service.fees.strategies(),
        }
        if asset and from_addr and to_addr and amount is not None:
            estimate = await service.fees.estimate_cost(asset, from_addr, to_addr, amount, strategy)
            out["estimate"] = estimate.to_dict()
        return out

    data = _one_shot(cfg, _fees)

    console.print(f"[bold]⛽ {data['fee_gwei']} gwei[/bold] ({strategy}, {urgency} urgency)")
    console.print(f"  Congestion: {data['congestion']}  Recommended: {data['recommended']}")
    if data["delay"]:
        console.print("[yellow]  Network congested: consider delaying a slow transaction[/yellow]")

    table = Table(title="Strategies")
    table.add_column("Name", style="cyan")
    table.add_column("Multiplier", justify="right")
    table.add_column("Description")
    for s in data["strategies"]:
        table.add_row(s["name"], f"×{s['multiplier']}", s["description"])
    console.print(table)

    if "estimate" in data:
        est = data["estimate"]
        flag = " [yellow](fallback)[/yellow]" if est["fallback"] else ""
        console.print(
            f"  Transfer: {est['gas_limit']} gas ≈ {est['cost_native']} ETH (${est['cost_usd']}){flag}"
        )


# ─── STATUS / ACTIVITY ───────────────────────────────────────────────

@cli.command()
@click.option("--wallet", "wallet_address", default=None, help="Limit to one wallet")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def status(ctx: click.Context, wallet_address: str | None, as_json: bool) -> None:
    """Show network, sweep and transfer status."""
    cfg: WatcherConfig = ctx.obj["config"]

    async def _status(service: WatcherService) -> dict[str, Any]:
        await service.network.update()
        data = service.status()
        if wallet_address:
            data["wallet"] = service.sweep_status(wallet_address)
            data["transfers_today"] = service.db.get_transfer_stats_today(wallet_address.strip().lower())
        return data

    try:
        data = _one_shot(cfg, _status)
    except ValueError as e:
        _fail(str(e))
        return

    if as_json:
        console.print_json(json.dumps(data, default=str))
        return

    net = data.get("network") or {}
    console.print("[bold]📊 Status[/bold]")
    console.print(
        f"  Block {net.get('current_block', '?')}, base fee {net.get('base_fee_gwei', '?')} gwei, "
        f"load {net.get('network_load_pct', '?')}% ({net.get('congestion', '?')}), "
        f"{net.get('connection_status', '?')}"
    )
    stats = data["transfers_today"]
    console.print(
        f"  Today: {stats['transfers_today']} sweeps, ${stats['usd_total']:,.2f}, "
        f"{stats['asset_count']} assets"
    )
    if "wallet" in data:
        w = data["wallet"]
        console.print(
            f"  {w['wallet']}: {w['active_sweeps']} active, "
            f"{w['pending_transactions']} pending transactions"
        )
        if w["last_activity"]:
            console.print(f"  Last activity: {w['last_activity']['title']}")


@cli.command()
@click.option("--wallet", "wallet_address", default=None, help="Limit to one wallet")
@click.option("--limit", default=20, help="Number of entries to show")
@click.pass_context
def activity(ctx: click.Context, wallet_address: str | None, limit: int) -> None:
    """Show the recent activity feed."""
    cfg: WatcherConfig = ctx.obj["config"]

    async def _activity(service: WatcherService) -> list[Any]:
        wallet = wallet_address.strip().lower() if wallet_address else None
        return service.db.get_activities(wallet, limit=limit)

    entries = _one_shot(cfg, _activity)

    table = Table(title=f"📜 Activity ({len(entries)})")
    table.add_column("When", style="dim")
    table.add_column("Wallet", max_width=14)
    table.add_column("Type", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    for a in entries:
        table.add_row(a.created_at[:19], a.wallet_address[:14], a.type, a.title, a.status)
    console.print(table)


# ─── EMERGENCY STOP ──────────────────────────────────────────────────

@cli.command("emergency-stop")
@click.option("--wallet", "wallet_address", default=None, help="Stop one wallet only")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.pass_context
def emergency_stop(ctx: click.Context, wallet_address: str | None, yes: bool) -> None:
    """Halt monitoring and deactivate wallet configurations."""
    cfg: WatcherConfig = ctx.obj["config"]
    target = wallet_address or "ALL wallets"
    if not yes and not click.confirm(f"Deactivate {target}?"):
        return

    async def _stop(service: WatcherService) -> dict[str, Any]:
        return service.emergency_stop(wallet_address)

    try:
        result = _one_shot(cfg, _stop)
    except ValueError as e:
        _fail(str(e))
        return
    console.print(f"[red]🛑 Emergency stop: {len(result['wallets'])} wallet(s) deactivated[/red]")


if __name__ == "__main__":
    cli()
