#!/usr/bin/env python3
"""
publish_site.py — Build and publish a static site to S3 behind CloudFront.

Reads the site file (TOML), builds the site, uploads content-addressed
bundles, stages them under a deployment namespace, switches the live
pointer and invalidates "/*". Bucket and distribution id not set in the
site file are read from SSM (/platform/sites/{site}/...).

Usage:
    uv run python scripts/publish_site.py deploy --config site.toml
    uv run python scripts/publish_site.py deploy --config site.toml --dev
    uv run python scripts/publish_site.py status --config site.toml
    uv run python scripts/publish_site.py rollback --config site.toml --deployment-id deploy-<hash>
    uv run python scripts/publish_site.py unlock --config site.toml --lock-id <id>

--skip-build publishes whatever the build output directory already holds. It
does not deploy the placeholder page; only --dev does that.

Exit codes:
    0 success, 1 deploy failure or conflict, 2 input/configuration error
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import boto3

from site_publisher.config import SiteSettings, load_settings
from site_publisher.deploy import deploy_site, rollback_site, site_status
from site_publisher.exceptions import (
    DeployFailed,
    InputError,
    StateConflictError,
    TransientIOError,
)
from site_publisher.site_lock import LockOwnershipError, current_lock, release_lock

logger = logging.getLogger("publish_site")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _add_config(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", default="site.toml", help="Site file (default site.toml)")

    deploy = subparsers.add_parser("deploy", help="Build and publish the site")
    _add_config(deploy)
    deploy.add_argument(
        "--dev", action="store_true", help="Publish placeholder content to deploy-live"
    )
    deploy.add_argument(
        "--skip-build", action="store_true", help="Publish the existing build output as is"
    )
    deploy.add_argument(
        "--outputs-file", default=None, help="Also write reported outputs as JSON to this path"
    )

    status = subparsers.add_parser("status", help="Show the live and staged deployments")
    _add_config(status)

    rollback = subparsers.add_parser("rollback", help="Repoint the site at a staged deployment")
    _add_config(rollback)
    rollback.add_argument("--deployment-id", required=True, help="Staged deployment to serve")

    unlock = subparsers.add_parser("unlock", help="Release a stuck site lock")
    _add_config(unlock)
    unlock.add_argument("--lock-id", default=None, help="Expected lockId to release")
    unlock.add_argument(
        "--force", action="store_true", help="Release without validating lockId ownership"
    )

    return parser.parse_args(argv)


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def cmd_deploy(args: argparse.Namespace, settings: SiteSettings) -> int:
    result = deploy_site(settings)
    outputs = result.to_dict()
    _print_json(outputs)
    if args.outputs_file:
        Path(args.outputs_file).write_text(json.dumps(outputs, indent=2, sort_keys=True) + "\n")
        logger.info("Wrote outputs to %s", args.outputs_file)
    return 0


def cmd_status(args: argparse.Namespace, settings: SiteSettings) -> int:
    _print_json(site_status(settings))
    return 0


def cmd_rollback(args: argparse.Namespace, settings: SiteSettings) -> int:
    _print_json(rollback_site(settings, args.deployment_id).to_dict())
    return 0


def cmd_unlock(args: argparse.Namespace, settings: SiteSettings) -> int:
    if not args.lock_id and not args.force:
        print("Provide --lock-id or use --force for unconditional release.", file=sys.stderr)
        return 2
    ddb_client = boto3.client("dynamodb", region_name=settings.aws_region)
    lock = current_lock(ddb_client, table_name=settings.locks_table, site=settings.site)
    if lock is not None:
        logger.info(
            "Current lock for %s held by %s since %s",
            settings.site,
            lock.acquired_by,
            lock.acquired_at,
        )
    try:
        released = release_lock(
            ddb_client,
            table_name=settings.locks_table,
            site=settings.site,
            lock_id=None if args.force else args.lock_id,
        )
    except LockOwnershipError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"Lock {'released' if released else 'not present'}: site {settings.site}")
    return 0


_COMMANDS = {
    "deploy": cmd_deploy,
    "status": cmd_status,
    "rollback": cmd_rollback,
    "unlock": cmd_unlock,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        overrides: dict[str, Any] = {}
        if getattr(args, "dev", False):
            overrides["dev_mode"] = True
        if getattr(args, "skip_build", False):
            overrides["skip_build"] = True
        settings = load_settings(args.config, **overrides)
        return _COMMANDS[args.command](args, settings)
    except InputError as exc:
        logger.error("Input error: %s", exc)
        return 2
    except DeployFailed as exc:
        logger.error(
            "Deploy failed in state %s (completed: %s): %s",
            exc.last_state.value,
            ", ".join(state.value for state in exc.completed_states) or "none",
            exc.reason,
        )
        return 1
    except (StateConflictError, TransientIOError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
