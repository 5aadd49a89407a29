from __future__ import annotations

import argparse
import asyncio
import json
import sys

from keywarden.core.logging import configure_logging
from keywarden.domain.entities import Plan
from keywarden.services.factory import build_default_services
from keywarden.workers.rotation_worker import enqueue_rotation_cycle, tenant_from_payload


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a credential rotation cycle for one tenant")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--plan", default=Plan.FREE.value, choices=[plan.value for plan in Plan])
    parser.add_argument("--credential-id", default=None, help="Rotate a single credential instead of the due set")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--no-refresh", action="store_true", help="Skip the expiry rescan before selecting due credentials")
    parser.add_argument("--enqueue", action="store_true", help="Hand the cycle to the rotation worker instead")
    return parser


async def _run(args: argparse.Namespace) -> int:
    payload = {"tenant_id": args.tenant_id, "plan": args.plan, "user_id": "cli"}
    if args.enqueue:
        job_id = await enqueue_rotation_cycle(payload)
        print(f"rotation_job_id={job_id or ''}")
        return 0
    services = build_default_services()
    ctx = tenant_from_payload(payload)
    if args.credential_id:
        outcome = await services.engine.rotate_credential(ctx, args.credential_id)
        # The superseded IAM key is deleted after the grace period; finish it before exiting.
        await services.engine.wait_for_followups()
        print(f"credential_id={outcome.credential_id} outcome={outcome.outcome.value} attempts={outcome.attempts}")
        if outcome.error:
            print(f"error={outcome.error}")
        return 0 if outcome.succeeded else 2
    summary = await services.engine.run_rotation_cycle(
        ctx,
        concurrency=args.concurrency,
        refresh=not args.no_refresh,
    )
    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if summary.error is None else 2


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_credentials failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
