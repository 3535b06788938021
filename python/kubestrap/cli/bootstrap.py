#!/usr/bin/env python3
"""
kubestrap/cli/bootstrap.py

CLI for bootstrapping a single-master cluster. Example usage:

    python -m kubestrap.cli.bootstrap create \
       --name tcluster --region nyc1 --workdir /tmp/foobar

    python -m kubestrap.cli.bootstrap status --workdir /tmp/foobar

`create` resumes from the last completed stage recorded in the working
directory unless --no-resume is given. Every option can also come from a YAML
file (--config) or from KUBESTRAP_* environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import AsyncExitStack
from typing import Any, Dict

from kubestrap.cloud import build_cloud_provider
from kubestrap.deployment.bootstrap import ClusterBootstrapper, load_progress
from kubestrap.errors import KubestrapError
from kubestrap.models.bootstrap import STAGE_ORDER
from kubestrap.models.settings import ClusterSettings
from kubestrap.models.ssh import HostKeyPolicy


def _build_settings(args: argparse.Namespace) -> ClusterSettings:
    """ClusterSettings from --config (if any) overlaid with explicit flags."""
    overrides: Dict[str, Any] = {
        key: value
        for key, value in {
            "name": args.name,
            "region": args.region,
            "workdir": args.workdir,
            "image": args.image,
            "size": args.size,
            "overlay_cidr": args.overlay_cidr,
            "host_key_policy": args.host_key_policy,
            "cloud_backend": args.cloud_backend,
            "verbose": True if args.verbose else None,
        }.items()
        if value is not None
    }
    if args.config:
        with open(args.config, "r", encoding="utf-8") as fcfg:
            return ClusterSettings.from_yaml(fcfg.read(), **overrides)
    return ClusterSettings(**overrides)


async def run_create(args: argparse.Namespace) -> None:
    """
    Handler for the 'create' subcommand:
      1) Build settings and a cloud provider
      2) Run (or resume) the bootstrap
      3) Print where the credentials ended up
    """
    settings = _build_settings(args)
    cloud = build_cloud_provider(settings)

    async with AsyncExitStack() as stack:
        if hasattr(cloud, "__aenter__"):
            await stack.enter_async_context(cloud)  # type: ignore[arg-type]
        bootstrapper = ClusterBootstrapper(settings, cloud)
        result = await bootstrapper.run(
            resume=not args.no_resume, force_root=args.force_root
        )

    print(f"Master {result.instance_name} is up at {result.master_address}")
    print(f"SSH key fingerprint: {result.fingerprint}")
    for path in result.installed_files:
        print(f"  installed {path}")


async def run_status(args: argparse.Namespace) -> None:
    """Handler for the 'status' subcommand: print recorded progress."""
    progress = await load_progress(args.workdir)
    if progress is None:
        print(f"No bootstrap recorded in {args.workdir}")
        return

    print(f"Cluster: {progress.cluster_name}")
    for stage in STAGE_ORDER:
        mark = "done" if progress.is_done(stage) else "pending"
        if progress.failed_stage == stage:
            mark = "FAILED"
        print(f"  {stage.value:<30} {mark}")
    if progress.master_address:
        print(f"Master address: {progress.master_address}")
    if progress.last_error:
        print(f"Last error: {progress.last_error}")


def _add_create_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Debug logging and certificate tool output.",
    )
    parser.add_argument("--config", default=None, help="YAML file with cluster settings.")
    parser.add_argument("--name", default=None, help="Cluster name (default: tcluster).")
    parser.add_argument("--region", default=None, help="Region slug (default: nyc1).")
    parser.add_argument(
        "--workdir",
        default=None,
        help="Directory for keys, certificates and progress (default: /tmp/kubestrap).",
    )
    parser.add_argument("--image", default=None, help="Master image slug.")
    parser.add_argument("--size", default=None, help="Master size slug.")
    parser.add_argument("--overlay-cidr", default=None, help="Overlay network CIDR.")
    parser.add_argument(
        "--host-key-policy",
        default=None,
        choices=[p.value for p in HostKeyPolicy],
        help="How to treat the master's SSH host key (default: accept_any).",
    )
    parser.add_argument(
        "--cloud-backend",
        default=None,
        choices=["api", "doctl"],
        help="Talk to the REST API directly or through doctl (default: api).",
    )
    parser.add_argument(
        "--no-resume",
        action="store_true",
        default=False,
        help="Ignore recorded progress and run every stage again.",
    )
    parser.add_argument(
        "--force-root",
        action="store_true",
        default=False,
        help="Replace an existing CA root (invalidates issued certificates).",
    )


def main() -> None:
    """
    Entry point for the bootstrap CLI.
    Subcommands:
      - create: bootstrap (or resume bootstrapping) a cluster
      - status: show recorded progress for a working directory
    """
    parser = argparse.ArgumentParser(
        prog="kubestrap.cli.bootstrap",
        description="Bootstrap a single-master cluster on DigitalOcean.",
    )
    parser.add_argument("--verbose", action="store_true", default=False)
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create or resume a cluster.")
    _add_create_args(create_parser)
    create_parser.set_defaults(func=run_create)

    status_parser = subparsers.add_parser("status", help="Show recorded progress.")
    status_parser.add_argument("--workdir", default="/tmp/kubestrap")
    status_parser.set_defaults(func=run_status)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(args.func(args))
    except KubestrapError as exc:
        print(f"Bootstrap error: {exc}", file=sys.stderr)
        sys.exit(1)
    except ValueError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
