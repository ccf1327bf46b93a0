# ABOUTME: Configuration management for the KOTS in-cluster operator
# ABOUTME: Handles environment variables, control-plane endpoint, and binary locations

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the operator process. It:

1. READS environment variables (like KOTSADM_API_ENDPOINT, KOTSADM_TOKEN)
2. VALIDATES them (URLs get a scheme, log levels are real levels, etc.)
3. PROVIDES typed access to settings throughout the application

=============================================================================
ARCHITECTURE: TWO CONFIGURATION CLASSES
=============================================================================

1. BinarySettings: Where the external tools live (KOTS_OPERATOR_BINARIES__*)
   - kubectl, kustomize, helm executables
   - Optional directory of versioned kubectl builds (kubectl-v1.19, ...)

2. OperatorSettings: Main configuration container
   - Control-plane endpoint and connection token
   - Target namespace for manifests that don't declare one
   - Log level/format, audit log destination, kubeconfig override
   - Contains BinarySettings as nested object

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Control plane connection (names shared with the admin console deployment):
    KOTSADM_API_ENDPOINT      -> Control plane base URL
    KOTSADM_TOKEN             -> Connection token
    KOTSADM_TARGET_NAMESPACE  -> Default namespace for deploys

Operator settings (KOTS_OPERATOR_ prefix):
    KOTS_OPERATOR_LOG_LEVEL          -> DEBUG/INFO/WARNING/ERROR/CRITICAL
    KOTS_OPERATOR_LOG_JSON           -> JSON log lines (default: true)
    KOTS_OPERATOR_AUDIT_LOG          -> Path to JSON-lines audit file
    KOTS_OPERATOR_KUBECONFIG         -> Use kubeconfig instead of in-cluster
    KOTS_OPERATOR_REQUEST_TIMEOUT    -> HTTP timeout for control plane calls
    KOTS_OPERATOR_BINARIES__KUBECTL  -> kubectl executable
    KOTS_OPERATOR_BINARIES__SEARCH_DIR -> Directory of versioned kubectl builds

The reconnect backoff, connection wait, status throttle and namespace drain
timings are not settings: they are fixed constants of the modules
that own them.
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# EXTERNAL BINARIES
# =============================================================================


class BinarySettings(BaseModel):
    """
    Locations of the executables the applier shells out to.

    WHY A SEPARATE CLASS?
    ---------------------
    The operator never links kubectl/kustomize/helm; it runs them as child
    processes. Grouping their paths keeps the applier's constructor small and
    lets the whole group be overridden with one nested environment variable.
    """

    model_config = {"extra": "ignore"}

    kubectl: str = Field(default="kubectl", description="kubectl executable")
    kustomize: str = Field(default="kustomize", description="kustomize executable")
    helm: str = Field(default="helm", description="helm executable")

    search_dir: Path | None = Field(
        default=None,
        description="Directory holding versioned kubectl builds",
    )
    # When a deploy asks for kubectl_version "1.19", the applier first looks
    # for <search_dir>/kubectl-v1.19 and falls back to the plain kubectl.


# =============================================================================
# MAIN OPERATOR SETTINGS
# =============================================================================


class OperatorSettings(BaseSettings):
    """
    Main operator configuration.

    USAGE:
    ------
        settings = load_settings()
        print(settings.api_endpoint)        # "http://kotsadm:3000"
        print(settings.binaries.kubectl)    # "kubectl"
    """

    model_config = SettingsConfigDict(
        env_prefix="KOTS_OPERATOR_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # CONTROL PLANE CONNECTION
    # -------------------------------------------------------------------------

    api_endpoint: str = Field(
        default="",
        validation_alias="KOTSADM_API_ENDPOINT",
        description="Control plane base URL",
    )

    token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KOTSADM_TOKEN",
        description="Connection token used for the socket and HTTP basic auth",
    )
    # The same token authenticates the websocket (query parameter) and the
    # result/status PUTs (basic auth password, empty username).

    target_namespace: str = Field(
        default="default",
        validation_alias="KOTSADM_TARGET_NAMESPACE",
        description="Namespace used when a deploy command targets '.'",
    )

    # -------------------------------------------------------------------------
    # LOGGING AND AUDIT
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    log_json: bool = Field(default=True, description="Emit JSON log lines")
    # Inside a cluster the logs are scraped, so JSON is the default.
    # Set KOTS_OPERATOR_LOG_JSON=false for colored console output locally.

    audit_log: Path | None = Field(default=None, description="Path to audit log file")

    # -------------------------------------------------------------------------
    # CLUSTER ACCESS
    # -------------------------------------------------------------------------

    kubeconfig: Path | None = Field(
        default=None,
        description="Kubeconfig to use instead of the in-cluster service account",
    )

    request_timeout: float = Field(
        default=30.0,
        description="HTTP timeout in seconds for control plane requests",
    )

    binaries: BinarySettings = Field(default_factory=BinarySettings)

    # -------------------------------------------------------------------------
    # CUSTOM VALIDATORS
    # -------------------------------------------------------------------------

    @field_validator("api_endpoint")
    @classmethod
    def validate_api_endpoint(cls, v: str) -> str:
        """
        Ensure the endpoint has a scheme and no trailing slash.

        Result callbacks arrive as absolute paths ("/api/v1/deploy/result"),
        so the base URL must not end with "/" or every PUT would carry a
        double slash. Unlike public endpoints, the control plane is usually
        reached over plain cluster-internal HTTP, so "http://" is the default.
        """
        if not v:
            return v
        if not v.startswith(("http://", "https://")):
            v = f"http://{v}"
        return v.rstrip("/")

    def namespace_for(self, requested: str | None) -> str:
        """
        Resolve a command's namespace against the target namespace.

        The control plane sends "." to mean "wherever the operator runs".
        """
        if not requested or requested == ".":
            return self.target_namespace
        return requested


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> OperatorSettings:
    """
    Load settings from environment with validation.

    If KOTS_OPERATOR_ENV_FILE is set, variables are also read from that file,
    which is handy when running the operator outside a cluster.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return OperatorSettings(
        _env_file=os.environ.get("KOTS_OPERATOR_ENV_FILE"),
    )
