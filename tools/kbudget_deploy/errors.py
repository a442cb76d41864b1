"""Failure taxonomy shared by the deployment engine and its gateways."""
from __future__ import annotations

from typing import Any, Dict, Optional


class ConfigurationError(ValueError):
  """Raised for invalid configuration files, CLI values or resource tables."""


class DeploymentError(Exception):
  code = "DeploymentError"

  def __init__(
    self,
    message: str,
    *,
    type_tag: Optional[str] = None,
    remediation: Optional[str] = None,
  ) -> None:
    super().__init__(message)
    self.message = message
    self.type_tag = type_tag
    self.remediation = remediation
    # Child outcomes recorded before this error interrupted a child collection.
    self.partial_children: Dict[str, Any] = {}

  def to_dict(self) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"code": self.code, "message": self.message}
    if self.remediation:
      payload["remediation"] = self.remediation
    return payload


class AuthenticationRequired(DeploymentError):
  code = "AuthenticationRequired"

  def __init__(self, message: str = "Not logged in to Azure.", **kwargs: Any) -> None:
    kwargs.setdefault("remediation", "az login")
    super().__init__(message, **kwargs)


class MissingDependency(DeploymentError):
  code = "MissingDependency"

  def __init__(self, message: str, *, parent_type: str, **kwargs: Any) -> None:
    super().__init__(message, **kwargs)
    self.parent_type = parent_type

  def to_dict(self) -> Dict[str, Any]:
    payload = super().to_dict()
    payload["parentType"] = self.parent_type
    return payload


class RunLockHeld(DeploymentError):
  code = "RunLockHeld"


class ProviderError(DeploymentError):
  """Failure reported by the provider gateway for a single call."""

  code = "ProviderError"

  def __init__(self, message: str, *, details: str = "", **kwargs: Any) -> None:
    super().__init__(message, **kwargs)
    self.details = details


class AlreadyExists(ProviderError):
  code = "AlreadyExists"


class QuotaExceeded(ProviderError):
  code = "QuotaExceeded"


class ResourceNotFound(ProviderError):
  code = "ResourceNotFound"


class ProvisioningFailed(ProviderError):
  code = "ProvisioningFailed"


class TemplateNotFound(ProvisioningFailed):
  code = "TemplateNotFound"


def error_to_dict(error: Optional[BaseException]) -> Optional[Dict[str, Any]]:
  if error is None:
    return None
  if isinstance(error, DeploymentError):
    return error.to_dict()
  return {"code": type(error).__name__, "message": str(error)}
