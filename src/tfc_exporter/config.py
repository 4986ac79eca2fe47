"""Pydantic models and loader for exporter configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .utils import parse_bool, resolve_env, split_csv

DEFAULT_API_ADDRESS = "https://app.terraform.io/"

# Environment variables applied on top of the YAML file, as (section, key).
ENV_OVERRIDES = {
    "TF_API_TOKEN": ("api", "token"),
    "TF_API_TOKEN_FILE": ("api", "tokenFile"),
    "TF_API_ADDRESS": ("api", "address"),
    "TF_API_INSECURE_SKIP_VERIFY": ("api", "insecureSkipVerify"),
    "TF_LISTEN_ADDRESS": ("exporter", "listenAddress"),
    "TF_LOG_LEVEL": ("exporter", "logLevel"),
    "TF_LOG_FORMAT": ("exporter", "logFormat"),
}


class ApiSettings(BaseModel):
    """Connection settings for the Terraform Cloud/Enterprise API."""

    token: Optional[str] = None
    tokenFile: Optional[str] = None
    address: str = DEFAULT_API_ADDRESS
    insecureSkipVerify: bool = False
    maxConcurrency: int = 10
    requestTimeoutSeconds: float = 60.0

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_limits(self) -> "ApiSettings":
        """Validate concurrency and timeout bounds."""
        if self.maxConcurrency < 1:
            raise ValueError("maxConcurrency must be >= 1")
        if self.requestTimeoutSeconds <= 0:
            raise ValueError("requestTimeoutSeconds must be > 0")
        return self

    def resolve_token(self) -> str:
        """Return the API token, preferring the first line of tokenFile.

        Raises:
            ValueError: If neither a token file nor a token is configured.
        """
        if self.tokenFile:
            with Path(self.tokenFile).open("r", encoding="utf-8") as f:
                token = f.readline().strip()
            if token:
                return token
            raise ValueError(f"API token file {self.tokenFile} is empty")
        if self.token:
            return self.token
        raise ValueError("Missing API token")


class ExporterSettings(BaseModel):
    """Settings for the exporter process itself."""

    listenAddress: str = "0.0.0.0:9100"
    logLevel: Literal["debug", "info", "warn", "error"] = "info"
    logFormat: Literal["logfmt", "json"] = "logfmt"
    tlsCertFile: Optional[str] = None
    tlsKeyFile: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_listen(self) -> "ExporterSettings":
        """Validate listen address and TLS file pairing."""
        host, sep, port = self.listenAddress.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(
                f"listenAddress must be HOST:PORT, got '{self.listenAddress}'"
            )
        if bool(self.tlsCertFile) != bool(self.tlsKeyFile):
            raise ValueError("tlsCertFile and tlsKeyFile must be set together")
        return self

    @property
    def host(self) -> str:
        """Host part of listenAddress."""
        return self.listenAddress.rpartition(":")[0] or "0.0.0.0"

    @property
    def port(self) -> int:
        """Port part of listenAddress."""
        return int(self.listenAddress.rpartition(":")[2])


class AppConfig(BaseModel):
    """Root configuration object for the exporter."""

    organizations: List[str] = Field(default_factory=list)
    api: ApiSettings = Field(default_factory=ApiSettings)
    exporter: ExporterSettings = Field(default_factory=ExporterSettings)

    model_config = ConfigDict(extra="forbid")

    @field_validator("organizations")
    @classmethod
    def unique_organizations(cls, value: List[str]) -> List[str]:
        """Drop repeated organization names, keeping the first occurrence."""
        return list(dict.fromkeys(value))


def apply_env_overrides(data: dict) -> dict:
    """Overlay TF_* environment variables onto raw config data."""
    merged = dict(data)
    orgs = os.environ.get("TF_ORGANIZATIONS")
    if orgs is not None:
        merged["organizations"] = split_csv(orgs)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        if key == "insecureSkipVerify":
            value = parse_bool(value)
        merged[section] = {**(merged.get(section) or {}), key: value}
    return merged


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load and validate exporter configuration.

    The YAML file is optional; when it does not exist the configuration is
    built from defaults and environment variables alone.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ValueError: If validation fails.
    """
    data: dict = {}
    if path is not None:
        raw_path = Path(path)
        if raw_path.exists():
            with raw_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file {raw_path} must contain a mapping")
    data = resolve_env(data)
    data = apply_env_overrides(data)
    try:
        return AppConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
