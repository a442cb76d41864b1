"""Human-readable plan and summary tables printed around a run."""
from __future__ import annotations

import os
import sys
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from kbudget_deploy.models import DeploymentRequest, ProvisioningState, RunReport, ValidationResult
from kbudget_deploy.resource_types import ResourceTypeSpec

PALETTE_KEYS = ("heading", "root", "dependent", "arrow", "ok", "warn", "error", "reset")


class ColorMode(str, Enum):
  AUTO = "auto"
  ALWAYS = "always"
  NEVER = "never"


def supports_color_output() -> bool:
  stream = getattr(sys.stdout, "isatty", None)
  return bool(stream and stream()) and os.environ.get("NO_COLOR") is None


def use_color(requested_mode: str) -> bool:
  try:
    mode = ColorMode(requested_mode or ColorMode.AUTO.value)
  except ValueError:
    mode = ColorMode.AUTO
  return mode is ColorMode.ALWAYS or (mode is ColorMode.AUTO and supports_color_output())


def build_console_palette(requested_mode: str) -> Dict[str, str]:
  palette = {key: "" for key in PALETTE_KEYS}
  if use_color(requested_mode):
    palette.update({
      "heading": "\033[1m",
      "root": "\033[32m",
      "dependent": "\033[36m",
      "arrow": "\033[90m",
      "ok": "\033[32m",
      "warn": "\033[33m",
      "error": "\033[31m",
      "reset": "\033[0m",
    })
  return palette


_STATE_COLORS = {
  ProvisioningState.SUCCEEDED: "ok",
  ProvisioningState.WOULD_DEPLOY: "dependent",
  ProvisioningState.SKIPPED: "warn",
  ProvisioningState.FAILED: "error",
}


def print_execution_plan(
  specs: List[ResourceTypeSpec],
  request: DeploymentRequest,
  palette: Optional[Dict[str, str]] = None,
) -> None:
  if not specs:
    print("No resource types selected for deployment.")
    return
  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}

  heading = palette.get("heading", "")
  reset = palette.get("reset", "")
  selected = {spec.type_tag for spec in specs}

  print(f"{heading}Dependency map (selected scope):{reset}")
  roots = [spec for spec in specs if not spec.dependencies()]
  dependents = [spec for spec in specs if spec.dependencies()]

  print(f"  {heading}Root types:{reset}")
  if roots:
    for spec in roots:
      print(f"    - {palette.get('root', '')}{spec.type_tag.value}{reset}")
  else:
    print("    (none)")

  print(f"  {heading}Dependent types:{reset}")
  if dependents:
    for spec in dependents:
      print(f"    {palette.get('dependent', '')}{spec.type_tag.value}{reset}")
      for dependency in sorted(spec.dependencies(), key=lambda item: item.value):
        suffix = "" if dependency in selected else f" {palette.get('arrow', '')}(existing){reset}"
        print(f"      {palette.get('arrow', '')}-> {reset}{palette.get('root', '')}{dependency.value}{reset}{suffix}")
  else:
    print("    (none)")
  print()

  mode = " (dry run)" if request.dry_run else ""
  print(f"{heading}Execution order{mode}:{reset}")
  for position, spec in enumerate(specs, 1):
    children = f" [{', '.join(spec.child_ids)}]" if spec.has_children else ""
    print(f"  {position}. {palette.get('dependent', '')}{spec.type_tag.value}{reset} (rank {spec.rank}){children}")
  print()


def print_run_summary(
  report: RunReport,
  palette: Optional[Dict[str, str]] = None,
  report_path: Optional[Path] = None,
  *,
  include_deployments: bool = True,
) -> None:
  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}
  reset = palette.get("reset", "")

  if include_deployments:
    _print_outcome_table(report, palette)

  if report.validation is not None:
    print_validation_summary(report.validation, palette)

  status_color = palette.get("ok" if report.overall_status.value == "Success" else "error", "")
  print(f"Overall status: {status_color}{report.overall_status.value}{reset} ({report.duration_minutes} min)")
  if report.fatal_error is not None:
    print(f"Run aborted: {report.fatal_error}", file=sys.stderr)
  if report_path is not None:
    print(f"Results: {report_path}")
  if report.log_file is not None:
    print(f"Log file: {report.log_file}")


def _print_outcome_table(report: RunReport, palette: Dict[str, str]) -> None:
  heading = palette.get("heading", "")
  reset = palette.get("reset", "")
  print(f"{heading}Deployment summary ({report.environment.value}, {report.resource_group}):{reset}")
  print(f"  {'TYPE':<24} {'STATE':<12} {'SECONDS':>8}  ERROR")
  recorded = set()
  for outcome in report.outcomes:
    recorded.add(outcome.type_tag)
    color = palette.get(_STATE_COLORS[outcome.provisioning_state], "")
    error = outcome.error.message if outcome.error else ""
    print(
      f"  {outcome.type_tag.value:<24} {color}{outcome.provisioning_state.value:<12}{reset} "
      f"{outcome.duration_seconds:>8.1f}  {error}"
    )
    for child in outcome.children.values():
      child_color = palette.get(_STATE_COLORS[child.provisioning_state], "")
      child_error = child.error.message if child.error else ""
      print(f"    - {child.child_id:<20} {child_color}{child.provisioning_state.value:<12}{reset} {'':>8}  {child_error}")
  for type_tag in report.requested_types:
    if type_tag not in recorded:
      print(f"  {type_tag.value:<24} {palette.get('arrow', '')}{'NotAttempted':<12}{reset}")
  print()


def print_validation_summary(result: ValidationResult, palette: Optional[Dict[str, str]] = None) -> None:
  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}
  heading = palette.get("heading", "")
  reset = palette.get("reset", "")
  print(f"{heading}Validation:{reset}")
  for verdict in result.verdicts.values():
    color = palette.get("ok" if verdict.passed else "error", "")
    label = "PASS" if verdict.passed else "FAIL"
    detail = verdict.error or "; ".join(verdict.mismatches)
    print(f"  {verdict.type_tag:<24} {color}{label:<6}{reset} {detail}")
  print()
