#!/usr/bin/env python3
"""
Pipeline entry point for blue-green rollouts.

Usage:
    bluegreen-deploy rollout --image memberservices-service=registry/app:v2
    bluegreen-deploy rollout --artifacts artifacts --policy continue_on_error
    bluegreen-deploy status

Exit codes: 0 when every service completed, 1 when any service failed or
rolled back, 2 on usage or configuration errors.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from adapters import report_to_dict
from config import Settings, load_fleet, setup_logging
from fleet_runner import FleetRunner
from kube_types import FleetPolicy, FleetReport, Service
from rollout_controller import RolloutController, build_controller

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


class UsageError(Exception):
    pass


def connect(settings: Settings) -> RolloutController:
    try:
        return build_controller(settings)
    except Exception as e:
        # kubeconfig / in-cluster credential problems are configuration errors
        raise UsageError(f"Cannot connect to Kubernetes: {e}") from e


def parse_images(pairs: List[str]) -> Dict[str, str]:
    images = {}
    for pair in pairs:
        name, sep, ref = pair.partition("=")
        if not sep or not name or not ref:
            raise UsageError(f"--image expects name=ref, got {pair!r}")
        images[name.strip()] = ref.strip()
    return images


def artifact_names(service: Service) -> List[str]:
    # Build artifacts are keyed by the short name, e.g. "payments" for "payments-service".
    names = [service.name]
    if service.name.endswith("-service"):
        names.append(service.name[: -len("-service")])
    return names


def read_artifact_images(artifacts: str, services: List[Service]) -> Dict[str, str]:
    """Read ``<artifacts>/<name>-image-tag/<name>-image-tag.txt`` for each service."""
    images = {}
    root = Path(artifacts)
    for service in services:
        for name in artifact_names(service):
            path = root / f"{name}-image-tag" / f"{name}-image-tag.txt"
            if path.is_file():
                images[service.name] = path.read_text(encoding="utf-8").strip()
                break
    return images


def select_services(fleet: List[Service], names: List[str]) -> List[Service]:
    if not names:
        return fleet
    by_name = {s.name: s for s in fleet}
    unknown = [n for n in names if n not in by_name]
    if unknown:
        raise UsageError(f"Unknown services: {', '.join(unknown)}")
    wanted = set(names)
    # Keep fleet order regardless of the order given on the command line.
    return [s for s in fleet if s.name in wanted]


def print_report(report: FleetReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report_to_dict(report), indent=2))
        return
    for name, result in report.results.items():
        colors = f"{result.from_color.value if result.from_color else 'none'} -> " \
                 f"{result.to_color.value if result.to_color else '?'}"
        line = f"{name}: {result.state.value} ({colors})"
        if result.skipped:
            line += " [skipped, image unchanged]"
        if result.degraded:
            line += " [DEGRADED, operator action required]"
        if result.error is not None:
            line += f" error={result.error}"
        if result.cleanup_error is not None:
            line += f" cleanup_error={result.cleanup_error}"
        print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bluegreen-deploy", description="Blue-green rollout orchestrator")
    parser.add_argument("--env-file", help="Load environment variables from this file first")
    parser.add_argument("--fleet-file", help="YAML/JSON fleet definition (overrides FLEET_FILE)")
    sub = parser.add_subparsers(dest="command", required=True)

    rollout = sub.add_parser("rollout", help="Roll out new images to the fleet")
    rollout.add_argument("--service", action="append", default=[], help="Limit to this service (repeatable)")
    rollout.add_argument("--image", action="append", default=[], help="name=image reference (repeatable)")
    rollout.add_argument("--artifacts", help="Directory holding <service>-image-tag/<service>-image-tag.txt files")
    rollout.add_argument("--policy", choices=[p.value for p in FleetPolicy], help="Fleet failure policy")
    rollout.add_argument("--max-concurrency", type=int, help="Services rolled out in parallel")
    rollout.add_argument("--skip-unchanged", action="store_true", help="Skip services already running the image")
    rollout.add_argument("--json", action="store_true", help="Print the report as JSON")

    status = sub.add_parser("status", help="Show the live color of each service")
    status.add_argument("--service", action="append", default=[])
    return parser


async def _status(controller: RolloutController, services: List[Service]) -> int:
    code = EXIT_OK
    for service in services:
        try:
            active = await controller.color_resolver.resolve_active(service)
        except Exception as e:
            print(f"{service.name}: unknown ({e})")
            code = EXIT_FAILED
            continue
        print(f"{service.name} ({service.namespace}): {active.value if active else 'none'}")
    return code


def main(argv: Optional[List[str]] = None, controller: Optional[RolloutController] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        load_dotenv(args.env_file, override=True)
    try:
        settings = Settings()
    except Exception as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE
    setup_logging(settings.LOG_LEVEL)

    try:
        fleet = load_fleet(args.fleet_file) if args.fleet_file else settings.fleet()
        services = select_services(fleet, args.service)
        if not services:
            raise UsageError("No services configured (set FLEET_SERVICES, FLEET_FILE or --fleet-file)")

        if args.command == "status":
            controller = controller or connect(settings)
            return asyncio.run(_status(controller, services))

        images = read_artifact_images(args.artifacts, services) if args.artifacts else {}
        images.update(parse_images(args.image))
        policy = FleetPolicy(args.policy) if args.policy else settings.FLEET_POLICY
        concurrency = args.max_concurrency or settings.FLEET_MAX_CONCURRENCY

        controller = controller or connect(settings)
        runner = FleetRunner(controller, max_concurrency=concurrency, skip_unchanged=args.skip_unchanged)
        report = asyncio.run(runner.run_fleet(services, images, policy))
    except (UsageError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    print_report(report, args.json)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
