import argparse
import asyncio
import json
import logging
import os
import sys

import uvicorn

from questbot.config import load_config
from questbot.errors import QuestBotError
from questbot.logging_config import setup_logging
from questbot.models import RunSummary
from questbot.runtime import Runtime, bootstrap

log = logging.getLogger("questbot.cli")


def _wallet_opts(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("--wallet", default="all", help="wallet number (1-based) or 'all'")
    sp.add_argument("--threads", type=int, default=None, help="wallets processed concurrently")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="questbot", description="Union testnet quest automation")
    parser.add_argument("--config", default=None, help="path to config.toml (default: packaged or $QUESTBOT_CONFIG)")
    sub = parser.add_subparsers(dest="command", required=True)

    _wallet_opts(sub.add_parser("daily", help="daily check-in transfers"))

    sp = sub.add_parser("transfer", help="transfer-count quests")
    _wallet_opts(sp)
    sp.add_argument("--chain", help="destination chain (default: every transfer quest chain)")
    mode = sp.add_mutually_exclusive_group()
    mode.add_argument("--count", type=int, help="number of transfers per destination")
    mode.add_argument("--complete-next", action="store_true", help="as many as the next milestone needs")
    sp.add_argument("--amount", help="amount per transfer")

    sp = sub.add_parser("cross-chain", help="multi-hop cross-chain quests")
    _wallet_opts(sp)
    which = sp.add_mutually_exclusive_group(required=True)
    which.add_argument("--quest", help="quest name, e.g. CHAIN_REACTION")
    which.add_argument("--all", action="store_true", help="every configured quest")
    sp.add_argument("--amount", help="amount per hop")

    sp = sub.add_parser("faucet", help="claim faucet tokens")
    _wallet_opts(sp)
    sp.add_argument("--chain", required=True)
    sp.add_argument("--max-attempts", type=int, default=1, help="0 keeps trying until the unit times out")
    sp.add_argument("--api-key", default=None, help="Capsolver key (default: $CAPSOLVER_API_KEY)")

    sp = sub.add_parser("full", help="daily, transfer, cross-chain, then faucets")
    _wallet_opts(sp)
    sp.add_argument("--api-key", default=None)

    sp = sub.add_parser("progress", help="show stored progress")
    sp.add_argument("--wallet", default="all")
    sp.add_argument("--json", action="store_true", help="print the raw stored record")

    sp = sub.add_parser("serve", help="run the HTTP API")
    sp.add_argument("--host", default="0.0.0.0")
    sp.add_argument("--port", type=int, default=8000)
    return parser


def _next_step(done: int, milestones: list[tuple[str, int]]) -> str:
    pending = [(name, target) for name, target in sorted(milestones, key=lambda m: m[1]) if target > done]
    if not pending:
        return "all milestones reached"
    name, target = pending[0]
    return f"next {name} at {target}"


def progress_lines(record, settings) -> list[str]:
    """Milestone view of one wallet's record, in quest-config order."""
    lines = ["Addresses:"]
    for chain, address in record.addresses.items():
        lines.append(f"  {chain}: {address or '-'}")

    lines.append("Daily Interactions:")
    for chain, milestones in settings.quests.daily.items():
        entry = record.daily_interactions.get(chain)
        days = entry.count if entry else 0
        last = f", last {entry.last_interaction}" if entry and entry.last_interaction else ""
        steps = [(name, m.days) for name, m in milestones.items()]
        lines.append(f"  {chain}: {days} days{last} ({_next_step(days, steps)})")

    lines.append("Transfers:")
    for chain, milestones in settings.quests.transfer.items():
        entry = record.transfers.get(chain)
        count = entry.count if entry else 0
        steps = [(m.name, m.count) for m in milestones]
        lines.append(f"  TO {chain}: {count} transfers ({_next_step(count, steps)})")

    lines.append("Cross-Chain Quests:")
    for quest in settings.quests.cross_chain:
        entry = record.cross_chain.get(quest.name)
        status = "Completed" if entry and entry.completed else "Pending"
        lines.append(f"  {quest.name}: {status}")
    return lines


async def run_command(args: argparse.Namespace, rt: Runtime) -> RunSummary | None:
    wallets = rt.resolve_wallets(args.wallet)
    match args.command:
        case "daily":
            return await rt.daily.run_for_all_wallets(wallets, args.threads)
        case "transfer":
            return await rt.transfer.run_for_all_wallets(
                wallets,
                args.threads,
                chain=args.chain,
                count=args.count,
                complete_next=args.complete_next,
                amount=args.amount,
            )
        case "cross-chain":
            return await rt.cross_chain.run_for_all_wallets(
                wallets, args.threads, quest=args.quest, all_quests=args.all, amount=args.amount
            )
        case "faucet":
            return await rt.faucet.run_for_all_wallets(
                wallets, args.threads, chain=args.chain, max_attempts=args.max_attempts, api_key=args.api_key
            )
        case "full":
            return await rt.full.run_for_all_wallets(wallets, args.threads, api_key=args.api_key)
        case "progress":
            for w in wallets:
                record = await rt.store.read_progress_data(w)
                print(f"Wallet {w + 1}")
                if args.json:
                    print(json.dumps(record.model_dump(mode="json", by_alias=True), indent=2))
                else:
                    print("\n".join(progress_lines(record, rt.settings)))
            return None
    raise ValueError(f"Unknown command: {args.command}")


def print_summary(summary: RunSummary) -> None:
    print(summary.describe())
    for report in summary.reports:
        status = "OK" if report.ok else "FAILED"
        line = f"  Wallet {report.wallet_index + 1}: {status} ({report.succeeded} ok, {report.failed} failed)"
        if report.error:
            line += f" - {report.error}"
        print(line)
        for note in report.notes:
            print(f"    {note}")
        for step in report.skipped:
            print(f"    not attempted: {step}")


async def _amain(args: argparse.Namespace) -> int:
    try:
        settings = load_config(args.config)
        rt = await bootstrap(settings, probe=args.command != "progress")
        rt.resolve_wallets(args.wallet)
    except QuestBotError as e:
        log.error("Startup failed: %s", e)
        return 1

    try:
        summary = await run_command(args, rt)
    except Exception as e:
        log.error("%s failed: %s: %s", args.command, e.__class__.__name__, e)
        log.debug("traceback", exc_info=True)
        return 1
    if summary is not None:
        print_summary(summary)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    if args.command == "serve":
        if args.config:
            os.environ["QUESTBOT_CONFIG"] = args.config
        uvicorn.run("questbot.app:app", host=args.host, port=args.port, lifespan="on")
        return 0
    return asyncio.run(_amain(args))


if __name__ == "__main__":
    sys.exit(main())
