#!/usr/bin/env python3
"""meshecho command line.

Build a topology of echo instances described in a YAML file and wait until
every instance can call every other one, or run the echo server inside a
workload.

## Topology file

    clusters: [east, west]        # kubeconfig contexts, optional
    instances:
      - service: a
        ports:
          - name: http
            protocol: HTTP
            service_port: 80
            instance_port: 18080
      - service: b
        replicas: 2
        ports:
          - name: http
            service_port: 80
            instance_port: 18080

## Usage

    meshecho build topology.yaml --timeout 180
    meshecho serve --listen 8080:wildcard --listen 9090:localhost
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
import yaml
from pydantic import ValidationError
from tabulate import tabulate

from meshecho.common.settings import configure_logging, settings
from meshecho.echo.builder import Builder
from meshecho.echo.config import Config
from meshecho.echo.errors import FetchError, MeshEchoError, NoWorkloadsError
from meshecho.echo.instance import Instances
from meshecho.kube.cluster import Cluster, default_clusters
from meshecho.kube.deployer import KubeDeployer

logger = logging.getLogger(__name__)


def load_topology(path: Path) -> Tuple[List[Cluster], List[Config]]:
    """Read clusters and instance configs from a topology file."""
    with open(path) as f:
        data: Dict[str, Any] = yaml.safe_load(f) or {}

    contexts = data.get("clusters") or []
    clusters = [Cluster(name=ctx, context=ctx) for ctx in contexts] or default_clusters()
    configs = [Config(**item) for item in data.get("instances", [])]
    return clusters, configs


def summarize(instances: Instances) -> str:
    """Render built instances as a table."""
    rows = []
    for instance in instances:
        try:
            pods = ", ".join(w.pod_name for w in instance.workloads())
        except (NoWorkloadsError, FetchError):
            pods = "-"
        rows.append(
            [
                instance.config.service,
                instance.config.namespace,
                instance.cluster.name,
                instance.address or "headless",
                pods,
            ]
        )
    return tabulate(rows, headers=["Service", "Namespace", "Cluster", "Address", "Workloads"])


def cmd_build(args: argparse.Namespace) -> int:
    try:
        clusters, configs = load_topology(args.topology)
    except (ValidationError, ValueError, OSError, yaml.YAMLError) as e:
        print(f"Error: invalid topology {args.topology}: {e}")
        return 1
    if not configs:
        print(f"No instances defined in {args.topology}")
        return 1

    deployer = KubeDeployer()
    builder = Builder(deployer=deployer, clusters=tuple(clusters))
    if args.timeout:
        builder = replace(builder, convergence_timeout=args.timeout)
    try:
        for cfg in configs:
            builder = builder.with_config(cfg)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    try:
        instances = builder.build()
    except MeshEchoError as e:
        print(f"Error: {e}")
        return 1

    print(summarize(instances))
    print(f"\n✓ {len(instances)} instance(s) converged")

    if args.cleanup:
        for instance in instances:
            deployer.delete(instance)
        print("✓ Cleaned up deployments")
    return 0


async def _serve(listeners: List[Tuple[str, int]]) -> None:
    from meshecho.server.app import app

    servers = [
        uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level=settings.log_level.lower())
        )
        for host, port in listeners
    ]
    await asyncio.gather(*(server.serve() for server in servers))


def parse_listen(value: str) -> Tuple[str, int]:
    """Parse ``PORT[:MODE]`` into a (host, port) pair."""
    from meshecho.server.app import bind_host

    port, _, mode = value.partition(":")
    try:
        return bind_host(mode or "wildcard"), int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid listen address: {value}") from None


def cmd_serve(args: argparse.Namespace) -> int:
    listeners = args.listen or [("0.0.0.0", settings.echo_port)]
    logger.info(f"Echo server listening on {listeners}")
    asyncio.run(_serve(listeners))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="meshecho",
        description="Build and exercise echo service topologies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: from settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Deploy a topology and wait for mesh convergence")
    build.add_argument("topology", type=Path, help="Path to the topology YAML file")
    build.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Convergence timeout in seconds (default: from settings)",
    )
    build.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete the deployments after a successful build",
    )
    build.set_defaults(func=cmd_build)

    serve = sub.add_parser("serve", help="Run the echo server")
    serve.add_argument(
        "--listen",
        action="append",
        type=parse_listen,
        help="PORT[:MODE] to listen on, MODE is wildcard, localhost or instance-ip",
    )
    serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
