import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from spark_fees.config import load_engine_config
from spark_fees.engine import FeeEngine
from spark_fees.errors import FeeEngineError, SweepAbortedError
from spark_fees.ledger.registry import RegisteredToken
from spark_fees.logging_config import setup_logging
from spark_fees.types import PoolKind, TransferDirection

logger = logging.getLogger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _overrides(args: argparse.Namespace) -> Optional[Dict[str, Any]]:
    if getattr(args, "db_path", None):
        return {"ledger": {"db_path": args.db_path}}
    return None


def _engine(args: argparse.Namespace) -> FeeEngine:
    return FeeEngine(load_engine_config(_overrides(args)))


async def _sweep_once(engine: FeeEngine, args: argparse.Namespace) -> Dict[str, Any]:
    try:
        report = await engine.run_claim_sweep(
            network=args.network,
            batch_size=args.batch_size,
            max_targets=args.max_targets,
        )
    except SweepAbortedError as exc:
        logger.error(f"Sweep aborted: {exc}")
        partial = exc.partial_report.to_dict() if exc.partial_report else None
        return {"error": exc.to_dict(), "partial_report": partial}
    return report.to_dict()


async def cmd_sweep(args: argparse.Namespace) -> int:
    async with _engine(args) as engine:
        if not args.interval:
            result = await _sweep_once(engine, args)
            _print_json(result)
            return 1 if "error" in result else 0

        logger.info(f"Running claim sweep every {args.interval}s")
        while True:
            _print_json(await _sweep_once(engine, args))
            await asyncio.sleep(args.interval)


async def cmd_claim_pool(args: argparse.Namespace) -> int:
    kind = PoolKind(args.kind) if args.kind else None
    async with _engine(args) as engine:
        results = await engine.claim_single_pool(
            args.pool,
            max_base_amount=args.max_base,
            max_quote_amount=args.max_quote,
            network=args.network,
            pool_kind=kind,
        )
    _print_json([r.to_dict() for r in results])
    return 0


async def cmd_summary(args: argparse.Namespace) -> int:
    async with _engine(args) as engine:
        _print_json(engine.get_creator_fee_summary(args.creator_id))
    return 0


async def cmd_pay(args: argparse.Namespace) -> int:
    async with _engine(args) as engine:
        receipt = await engine.pay_creator(args.creator_id, args.destination, network=args.network)
    _print_json(receipt.to_dict())
    return 0


async def cmd_assign_treasury(args: argparse.Namespace) -> int:
    async with _engine(args) as engine:
        wallet = engine.assign_treasury(args.project_id)
    _print_json({"project_id": args.project_id, "treasury_wallet": wallet})
    return 0


async def cmd_verify(args: argparse.Namespace) -> int:
    async with _engine(args) as engine:
        result = await engine.verify_external_transfer(
            args.signature,
            args.signer,
            args.amount,
            direction=args.direction,
            mint=args.mint,
            network=args.network,
        )
    _print_json(result.to_dict())
    return 0 if result.valid else 1


async def cmd_record_investment(args: argparse.Namespace) -> int:
    async with _engine(args) as engine:
        record = await engine.record_investment(
            args.project_id,
            args.signature,
            args.investor,
            args.amount,
            direction=args.direction,
            mint=args.mint,
            network=args.network,
        )
    _print_json(record.to_dict())
    return 0


async def cmd_register(args: argparse.Namespace) -> int:
    async with _engine(args) as engine:
        token = RegisteredToken(
            creator_id=args.creator_id,
            token_mint=args.token_mint,
            name=args.name,
            dbc_pool_address=args.dbc_pool,
            damm_pool_address=args.damm_pool,
            dao_treasury=args.dao_treasury,
            project_id=args.project_id,
        )
        engine.registry.upsert_token(token)
    _print_json({"registered": token.token_mint})
    return 0


COMMANDS = {
    "sweep": cmd_sweep,
    "claim-pool": cmd_claim_pool,
    "summary": cmd_summary,
    "pay": cmd_pay,
    "assign-treasury": cmd_assign_treasury,
    "verify": cmd_verify,
    "record-investment": cmd_record_investment,
    "register": cmd_register,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spark-fees")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-dir", default="logs")
    parser.add_argument("--db-path", default=None)
    subparsers = parser.add_subparsers(dest="command", required=True)

    network_parser = argparse.ArgumentParser(add_help=False)
    network_parser.add_argument("--network", choices=["mainnet", "devnet"], default=None)

    sweep_parser = subparsers.add_parser("sweep", parents=[network_parser])
    sweep_parser.add_argument("--interval", type=float, default=0, help="Repeat every N seconds")
    sweep_parser.add_argument("--batch-size", type=int, default=None)
    sweep_parser.add_argument("--max-targets", type=int, default=None)

    claim_parser = subparsers.add_parser("claim-pool", parents=[network_parser])
    claim_parser.add_argument("pool")
    claim_parser.add_argument("--kind", choices=[k.value for k in PoolKind], default=None)
    claim_parser.add_argument("--max-base", type=int, default=None)
    claim_parser.add_argument("--max-quote", type=int, default=None)

    summary_parser = subparsers.add_parser("summary")
    summary_parser.add_argument("creator_id")

    pay_parser = subparsers.add_parser("pay", parents=[network_parser])
    pay_parser.add_argument("creator_id")
    pay_parser.add_argument("destination")

    treasury_parser = subparsers.add_parser("assign-treasury")
    treasury_parser.add_argument("project_id")

    transfer_parser = argparse.ArgumentParser(add_help=False, parents=[network_parser])
    transfer_parser.add_argument("signature")
    transfer_parser.add_argument("amount")
    transfer_parser.add_argument(
        "--direction", choices=[d.value for d in TransferDirection], default=TransferDirection.DEPOSIT.value
    )
    transfer_parser.add_argument("--mint", default=None)

    verify_parser = subparsers.add_parser("verify", parents=[transfer_parser])
    verify_parser.add_argument("--signer", required=True)

    investment_parser = subparsers.add_parser("record-investment", parents=[transfer_parser])
    investment_parser.add_argument("--project-id", required=True)
    investment_parser.add_argument("--investor", required=True)

    register_parser = subparsers.add_parser("register")
    register_parser.add_argument("creator_id")
    register_parser.add_argument("token_mint")
    register_parser.add_argument("--name", default="")
    register_parser.add_argument("--dbc-pool", default=None)
    register_parser.add_argument("--damm-pool", default=None)
    register_parser.add_argument("--dao-treasury", default=None)
    register_parser.add_argument("--project-id", default=None)

    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(log_dir=args.log_dir, level=args.log_level)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return asyncio.run(handler(args))
    except FeeEngineError as exc:
        logger.error(f"{args.command} failed: {exc}")
        _print_json({"error": exc.to_dict()})
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
