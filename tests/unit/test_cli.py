"""Unit tests for the command line driver."""
import json
from pathlib import Path

import pytest

from kbudget_deploy import cli
from kbudget_deploy.resource_types import ResourceType


@pytest.fixture
def config_dir(tmp_path, template_root):
  root = tmp_path / "config"
  (root / "environments").mkdir(parents=True)
  (root / "deploy.yaml").write_text(
    "project: kbudget\n"
    "location: eastus\n"
    f"templatesRoot: {template_root}\n"
    "outputDir: ../results\n"
    "logDir: ../logs\n",
    encoding="utf-8",
  )
  (root / "environments" / "dev.yaml").write_text("extends: ../deploy.yaml\n", encoding="utf-8")
  return root


@pytest.fixture
def fake_cli(monkeypatch, gateway):
  monkeypatch.setattr(cli.shutil, "which", lambda name: f"/usr/bin/{name}")
  monkeypatch.setattr(cli, "AzureCliGateway", lambda *args, **kwargs: gateway)
  return gateway


class TestParseArguments:
  def test_deploy_options(self):
    args = cli.parse_arguments(
      ["deploy", "dev", "--resource-types", "network", "keyvault", "--dry-run", "--region", "westeurope", "--color", "never"]
    )
    assert args.command == "deploy"
    assert args.resource_types == ["network", "keyvault"]
    assert args.dry_run
    assert args.region == "westeurope"
    assert args.handler is cli.run_deploy

  def test_validate_defaults(self):
    args = cli.parse_arguments(["validate", "prod"])
    assert args.handler is cli.run_validate
    assert args.resource_types is None
    assert args.az_cli == "az"

  def test_invalid_environment(self):
    with pytest.raises(SystemExit):
      cli.parse_arguments(["deploy", "qa"])

  def test_all_environments_choice(self):
    assert cli.parse_arguments(["deploy", "all"]).environment == "all"


def test_missing_configuration(tmp_path, capsys):
  assert cli.main(["deploy", "dev", "--config-dir", str(tmp_path / "missing")]) == 1
  assert "Configuration error" in capsys.readouterr().err


def test_unknown_resource_type(config_dir, capsys):
  assert cli.main(["deploy", "dev", "--config-dir", str(config_dir), "--resource-types", "vm"]) == 1
  assert "Unknown resource type 'vm'" in capsys.readouterr().err


def test_missing_az_cli(config_dir, monkeypatch, capsys):
  monkeypatch.setattr(cli.shutil, "which", lambda name: None)
  assert cli.main(["deploy", "dev", "--config-dir", str(config_dir)]) == 1
  assert "was not found on PATH" in capsys.readouterr().err


def test_deploy_end_to_end(config_dir, fake_cli, capsys, reset_logging):
  code = cli.main(["deploy", "dev", "--config-dir", str(config_dir), "--resource-types", "network,keyvault", "--color", "never"])
  assert code == 0
  output = capsys.readouterr().out
  assert "Execution order:" in output
  assert "Overall status: Success" in output
  results_dir = config_dir.parent / "results"
  latest = json.loads((results_dir / "deployment-results_dev_latest.json").read_text(encoding="utf-8"))
  assert latest["requestedTypes"] == ["network", "keyvault"]
  assert Path(latest["logFile"]).is_file()
  assert Path(latest["logFile"]).name.startswith("deployment_dev_")


def test_validate_end_to_end(config_dir, fake_cli, capsys, reset_logging):
  fake_cli.seed_type(ResourceType.NETWORK)
  assert cli.main(["validate", "dev", "--config-dir", str(config_dir), "--resource-types", "network"]) == 0
  assert cli.main(["validate", "dev", "--config-dir", str(config_dir), "--resource-types", "storage"]) == 1
  assert "FAIL" in capsys.readouterr().out


def test_deploy_all_environments(config_dir, fake_cli, capsys, reset_logging):
  code = cli.main(["deploy", "all", "--config-dir", str(config_dir), "--dry-run", "--color", "never"])
  assert code == 0
  output = capsys.readouterr().out
  for environment in ("dev", "staging", "prod"):
    assert f"=== Environment: {environment} ===" in output
    assert (config_dir.parent / "results" / f"deployment-results_{environment}_latest.json").is_file()
  assert len(list((config_dir.parent / "logs").glob("deployment_*.log"))) == 3
  assert fake_cli.mutating_calls == []


def test_deploy_all_continues_after_failed_environment(config_dir, fake_cli, capsys, reset_logging):
  (config_dir / "environments" / "staging.yaml").write_text("extends: ../missing.yaml\n", encoding="utf-8")
  code = cli.main(["deploy", "all", "--config-dir", str(config_dir), "--dry-run", "--color", "never"])
  assert code == 1
  err = capsys.readouterr().err
  assert "Configuration error (staging)" in err
  assert "Failed environments: staging" in err
  results_dir = config_dir.parent / "results"
  assert (results_dir / "deployment-results_dev_latest.json").is_file()
  assert (results_dir / "deployment-results_prod_latest.json").is_file()
  assert not (results_dir / "deployment-results_staging_latest.json").exists()
