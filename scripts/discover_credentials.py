from __future__ import annotations

import argparse
import asyncio
import json
import sys

from keywarden.core.config import get_settings
from keywarden.core.logging import configure_logging
from keywarden.domain.entities import Plan
from keywarden.providers.discovery.aws import IamAccessKeySource, SecretsManagerSource, SsmParameterSource
from keywarden.services.factory import build_default_services
from keywarden.workers.rotation_worker import tenant_from_payload


_SOURCES = {
    "iam": IamAccessKeySource,
    "secretsmanager": SecretsManagerSource,
    "ssm": SsmParameterSource,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover credentials in the connected AWS account")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--plan", default=Plan.FREE.value, choices=[plan.value for plan in Plan])
    parser.add_argument("--region", default=None)
    parser.add_argument(
        "--source",
        action="append",
        choices=sorted(_SOURCES),
        help="Limit discovery to a source; repeatable. Defaults to all sources.",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    region = args.region or get_settings().aws_region
    sources = [_SOURCES[name](region) for name in (args.source or sorted(_SOURCES))]
    services = build_default_services()
    ctx = tenant_from_payload({"tenant_id": args.tenant_id, "plan": args.plan, "user_id": "cli"})
    report = await services.inventory.discover(ctx, sources)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if not report.failed_sources else 2


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"discover_credentials failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
