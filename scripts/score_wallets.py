"""
Degen Score - Wallet scoring CLI.

============================================================
USAGE
============================================================
python scripts/score_wallets.py preview ethereum:0xabc... solana:9WzD...
python scripts/score_wallets.py preview arbitrum:0xabc... --json
python scripts/score_wallets.py preview ethereum:vitalik.eth
python scripts/score_wallets.py challenge ethereum:0xabc...

`preview` scores raw addresses directly from chain data, without the
ownership check the manager enforces; it is meant for operators
inspecting wallets. `challenge` prints the message a user would sign.
EVM addresses may be given as ENS names.

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Union

from dotenv import load_dotenv

# Add parent to path
sys.path.insert(0, ".")

from degen_score import (
    Address,
    ChainId,
    DegenScoreError,
    DegenScoreManager,
    load_config,
)
from degen_score.providers import is_ens_name


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("score_wallets")


def parse_address(raw: str) -> Union[Address, tuple[ChainId, str]]:
    """Parse 'chain:address'; ENS names are kept as (chain, name) until resolved."""
    chain_name, sep, value = raw.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"Expected chain:address, got {raw!r}")
    try:
        chain = ChainId(chain_name.lower())
    except ValueError:
        choices = ", ".join(c.value for c in ChainId)
        raise argparse.ArgumentTypeError(f"Unknown chain {chain_name!r} (choose from {choices})") from None
    if chain.is_evm and is_ens_name(value):
        return chain, value.strip()
    try:
        return Address.parse(chain, value)
    except DegenScoreError as e:
        raise argparse.ArgumentTypeError(e.message) from e


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="score_wallets",
        description="Multi-chain degen score for wallets",
    )
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    sub = parser.add_subparsers(dest="command", required=True)

    preview = sub.add_parser("preview", help="Score addresses without ownership verification")
    preview.add_argument("addresses", nargs="+", type=parse_address, metavar="CHAIN:ADDRESS")
    preview.add_argument("--json", action="store_true", help="Print the full report as JSON")

    challenge = sub.add_parser("challenge", help="Print a verification message to sign")
    challenge.add_argument("address", type=parse_address, metavar="CHAIN:ADDRESS")

    return parser


def print_breakdown(metrics, breakdown) -> None:
    print(f"\n{'=' * 60}")
    print(f"  Degen Score: {breakdown.total:.2f} / 100  ({breakdown.tier.value})")
    print(f"  Airdrop eligible: {'yes' if breakdown.eligible else 'no'}")
    print("=" * 60)
    for category, points in breakdown.categories:
        print(f"  {category:<12} {points:6.2f}")
    print("-" * 60)
    for name, value in metrics.values().items():
        print(f"  {name:<24} {value:,.2f}")
    if breakdown.missing_chains:
        print(f"\n  [WARN] Missing chains: {', '.join(c.value for c in breakdown.missing_chains)}")
    if breakdown.partial_chains:
        print(f"  [WARN] Partial chains: {', '.join(c.value for c in breakdown.partial_chains)}")
    for diagnostic in breakdown.diagnostics:
        print(f"    - {diagnostic.chain.value} {diagnostic.data_kind}: {diagnostic.message}")


async def resolve(manager: DegenScoreManager, target: Union[Address, tuple[ChainId, str]]) -> Address:
    if isinstance(target, Address):
        return target
    return await manager.resolve_address(*target)


async def run_preview(manager: DegenScoreManager, addresses: list[Address], as_json: bool) -> int:
    results = await manager.orchestrator.fetch(addresses)
    metrics = manager.aggregator.aggregate(results, datetime.now(timezone.utc))
    breakdown = manager.engine.score(metrics)

    if as_json:
        print(json.dumps({"metrics": metrics.to_dict(), "score": breakdown.to_dict()}, indent=2))
    else:
        print_breakdown(metrics, breakdown)
    return 0


async def run_challenge(manager: DegenScoreManager, address: Address) -> int:
    challenge = await manager.issue_challenge(address.chain, address.value)
    print(challenge.message)
    print(f"\nnonce: {challenge.nonce}")
    print(f"expires: {challenge.expires_at.isoformat()}")
    return 0


async def main_async(args: argparse.Namespace) -> int:
    manager = DegenScoreManager(load_config())
    try:
        await manager.initialize()
        if args.command == "preview":
            addresses = [await resolve(manager, target) for target in args.addresses]
            return await run_preview(manager, addresses, args.json)
        return await run_challenge(manager, await resolve(manager, args.address))
    except DegenScoreError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        return 1
    finally:
        await manager.close()


def main() -> int:
    load_dotenv()
    args = create_parser().parse_args()
    logging.getLogger().setLevel(args.log_level)
    return asyncio.run(main_async(args))


if __name__ == "__main__":
    sys.exit(main())
