#!/usr/bin/env python3
"""KBudget infrastructure deployment driver.

Deploys the requested resource types in dependency order with the Azure CLI,
re-validates the live resources and writes a replayable results record.
"""
from __future__ import annotations

import argparse
import shutil
import sys
from pathlib import Path
from typing import Callable, List, Optional

from kbudget_deploy.config import DeploymentSettings, load_settings
from kbudget_deploy.console import ColorMode, build_console_palette, print_execution_plan, print_run_summary, use_color
from kbudget_deploy.engine import DeploymentEngine
from kbudget_deploy.errors import ConfigurationError
from kbudget_deploy.gateway import AzureCliGateway
from kbudget_deploy.logging_setup import configure_logging, get_logger, shutdown_logging
from kbudget_deploy.models import TIMESTAMP_FORMAT, DeploymentRequest, Environment, utc_now
from kbudget_deploy.resource_types import ALL_TYPES_SENTINEL, ResourceType, ordered_specs

ALL_ENVIRONMENTS = "all"


def _settings_from_args(args: argparse.Namespace, environment: Environment) -> DeploymentSettings:
  overrides = {
    "location": getattr(args, "region", None),
    "outputDir": args.output_dir,
    "logDir": args.log_dir,
    "templatesRoot": args.templates_root,
  }
  return load_settings(
    environment,
    config_dir=Path(args.config_dir) if args.config_dir else None,
    overrides=overrides,
  )


def _start_logging(args: argparse.Namespace, settings: DeploymentSettings, environment: Environment) -> Path:
  timestamp = utc_now().strftime(TIMESTAMP_FORMAT)
  log_file = settings.log_dir / f"deployment_{environment.value}_{timestamp}.log"
  configure_logging(log_file, level="DEBUG" if args.verbose else "INFO", use_color=use_color(args.color))
  return log_file


def _resolve_az_cli(az_cli: str) -> Optional[str]:
  az_cli_path = shutil.which(az_cli)
  if az_cli_path is None:
    print(
      f"Azure CLI executable '{az_cli}' was not found on PATH. "
      "Install Azure CLI or supply --az-cli with the full path to the executable.",
      file=sys.stderr,
    )
  return az_cli_path


def _for_each_environment(args: argparse.Namespace, run_one: Callable[[argparse.Namespace, str], int]) -> int:
  """Run one environment, or every environment in turn for ``all``.

  A failed environment does not stop the later ones; the exit code is 1 if any
  of them failed.
  """
  if args.environment != ALL_ENVIRONMENTS:
    return run_one(args, args.environment)

  failed: List[str] = []
  for environment in Environment:
    print(f"\n=== Environment: {environment.value} ===")
    try:
      exit_code = run_one(args, environment.value)
    except ConfigurationError as exc:
      print(f"Configuration error ({environment.value}): {exc}", file=sys.stderr)
      exit_code = 1
    if exit_code != 0:
      failed.append(environment.value)

  if failed:
    print(f"Failed environments: {', '.join(failed)}", file=sys.stderr)
    return 1
  return 0


def run_deploy(args: argparse.Namespace) -> int:
  return _for_each_environment(args, _deploy_environment)


def run_validate(args: argparse.Namespace) -> int:
  return _for_each_environment(args, _validate_environment)


def _deploy_environment(args: argparse.Namespace, environment_name: str) -> int:
  request = DeploymentRequest.build(
    environment_name,
    region=args.region,
    resource_types=args.resource_types,
    dry_run=args.dry_run,
    skip_prerequisite_type=args.skip_prerequisite_type,
  )
  settings = _settings_from_args(args, request.environment)
  palette = build_console_palette(args.color)
  print_execution_plan(ordered_specs(request.requested_types), request, palette)

  az_cli_path = _resolve_az_cli(args.az_cli)
  if az_cli_path is None:
    return 1

  log_file = _start_logging(args, settings, request.environment)
  try:
    get_logger(__name__).info("Log file", path=str(log_file))
    engine = DeploymentEngine(AzureCliGateway(az_cli_path, echo=args.echo), settings, log_file=log_file)
    result = engine.deploy(request)
  finally:
    shutdown_logging()

  print_run_summary(result.report, palette, result.export.path if result.export else None)
  return result.exit_code


def _validate_environment(args: argparse.Namespace, environment_name: str) -> int:
  environment = Environment.parse(environment_name)
  request = DeploymentRequest.build(environment_name, resource_types=args.resource_types)
  settings = _settings_from_args(args, environment)
  palette = build_console_palette(args.color)

  az_cli_path = _resolve_az_cli(args.az_cli)
  if az_cli_path is None:
    return 1

  log_file = _start_logging(args, settings, environment)
  try:
    engine = DeploymentEngine(AzureCliGateway(az_cli_path, echo=args.echo), settings, log_file=log_file)
    result = engine.validate_only(environment, request.requested_types)
  finally:
    shutdown_logging()

  print_run_summary(result.report, palette, include_deployments=False)
  return result.exit_code


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "environment",
    choices=[item.value for item in Environment] + [ALL_ENVIRONMENTS],
    help=f"Target environment, or '{ALL_ENVIRONMENTS}' for every environment in turn.",
  )
  parser.add_argument(
    "--resource-types",
    "--types",
    nargs="*",
    default=None,
    help=(
      "Resource types to act on (default: all). "
      f"Choices: {', '.join(item.value for item in ResourceType)}, {ALL_TYPES_SENTINEL}."
    ),
  )
  parser.add_argument(
    "--config-dir",
    default=None,
    help="Directory holding deploy.yaml and environments/<env>.yaml (default: ./config).",
  )
  parser.add_argument("--output-dir", default=None, help="Directory for deployment results records.")
  parser.add_argument("--log-dir", default=None, help="Directory for per-run log files.")
  parser.add_argument("--templates-root", default=None, help="Root of the ARM template store.")
  parser.add_argument(
    "--az-cli",
    default="az",
    help="Azure CLI executable name (default: az).",
  )
  parser.add_argument(
    "--color",
    choices=[mode.value for mode in ColorMode],
    default=ColorMode.AUTO.value,
    help="Color output mode: auto (default), always, or never.",
  )
  parser.add_argument(
    "--echo",
    action="store_true",
    help="Echo each Azure CLI command before execution (secrets are redacted).",
  )
  parser.add_argument(
    "--verbose",
    action="store_true",
    help="Log at debug level.",
  )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description="KBudget infrastructure deployment orchestrator")
  subparsers = parser.add_subparsers(dest="command", required=True)

  deploy_parser = subparsers.add_parser("deploy", help="Deploy resource types in dependency order.")
  _add_common_arguments(deploy_parser)
  deploy_parser.add_argument(
    "--region",
    "--location",
    default=None,
    help="Azure region for the resource group (default: from configuration).",
  )
  deploy_parser.add_argument(
    "--dry-run",
    action="store_true",
    help="Plan the run without calling any mutating Azure operation.",
  )
  deploy_parser.add_argument(
    "--skip-prerequisite-type",
    default=None,
    help="Skip the parent-resource prerequisite check for this one resource type.",
  )
  deploy_parser.set_defaults(handler=run_deploy)

  validate_parser = subparsers.add_parser("validate", help="Validate live resources without deploying.")
  _add_common_arguments(validate_parser)
  validate_parser.set_defaults(handler=run_validate, region=None)

  return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
  args = parse_arguments(argv)
  try:
    return args.handler(args)
  except ConfigurationError as exc:
    print(f"Configuration error: {exc}", file=sys.stderr)
    return 1
  except Exception as exc:  # pylint: disable=broad-except
    print(f"Unhandled error: {exc}", file=sys.stderr)
    return 1


if __name__ == "__main__":
  sys.exit(main())
