"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- YAML file loading with defaults
- Environment variable overrides (VM_IP, HOST_INTERFACE)
- Configuration initialization and display
"""

import ipaddress
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from limawan.core.exceptions import ConfigurationError, InvalidSpecError
from limawan.core.validation import (
    PortRange,
    validate_anchor_name,
    validate_interface_name,
    validate_ipv4,
    validate_path,
)


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/limawan/config.yaml")
DEFAULT_LOG_DIR = Path("/var/log/limawan")


def _absolute_path(v: Path) -> Path:
    try:
        validate_path(str(v))
    except InvalidSpecError as e:
        raise ValueError(e.message) from e
    return v


class AnchorConfig(BaseModel):
    """Locations of the pf artifacts managed by LimaWAN."""

    name: str = "limawan"
    path: Path = Path("/etc/pf.anchors/limawan")
    main_conf_path: Path = Path("/etc/pf.conf")
    backup_path: Path = Path("/etc/pf.conf.bak")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        try:
            return validate_anchor_name(v)
        except InvalidSpecError as e:
            raise ValueError(e.message) from e

    @field_validator("path", "main_conf_path", "backup_path")
    @classmethod
    def validate_paths(cls, v: Path) -> Path:
        return _absolute_path(v)


class ForwardingConfig(BaseModel):
    """Defaults and limits for forwarding requests."""

    default_vm_ip: str = "192.168.105.10"
    default_interface: str = "en0"
    vm_subnet: str = "192.168.105.0/24"
    external_port_range: str = "1024-65535"

    @field_validator("default_vm_ip")
    @classmethod
    def validate_vm_ip(cls, v: str) -> str:
        try:
            return validate_ipv4(v)
        except InvalidSpecError as e:
            raise ValueError(e.message) from e

    @field_validator("default_interface")
    @classmethod
    def validate_interface(cls, v: str) -> str:
        try:
            return validate_interface_name(v)
        except InvalidSpecError as e:
            raise ValueError(e.message) from e

    @field_validator("vm_subnet")
    @classmethod
    def validate_subnet(cls, v: str) -> str:
        ipaddress.IPv4Network(v, strict=False)
        return v

    @field_validator("external_port_range")
    @classmethod
    def validate_port_range(cls, v: str) -> str:
        return str(PortRange.parse(v))

    @property
    def port_range(self) -> PortRange:
        """Allowed external port range as a PortRange."""
        return PortRange.parse(self.external_port_range)


class LockConfig(BaseModel):
    """Cross-process lock guarding pf.conf mutations."""

    path: Path = Path("/var/run/limawan.lock")
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 0.1

    @field_validator("path")
    @classmethod
    def validate_lock_path(cls, v: Path) -> Path:
        return _absolute_path(v)

    @field_validator("timeout_seconds", "poll_interval_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v


class EngineConfig(BaseModel):
    """How the pf control tool is invoked."""

    pfctl_path: str = "pfctl"
    command_timeout: int = 30


class AuditConfig(BaseModel):
    """Audit trail settings."""

    enabled: bool = True
    log_path: Path = DEFAULT_LOG_DIR / "audit.log"


class LimawanConfig(BaseModel):
    """Root configuration model.

    Loaded from /etc/limawan/config.yaml; every value has a default so
    the file is optional.
    """

    anchor: AnchorConfig = Field(default_factory=AnchorConfig)
    forwarding: ForwardingConfig = Field(default_factory=ForwardingConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @classmethod
    def load(cls, path: Path) -> "LimawanConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: limawan config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {path}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "LimawanConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def with_environment(self, env: Optional["EnvironmentOverrides"] = None) -> "LimawanConfig":
        """Return a copy with VM_IP / HOST_INTERFACE overrides applied."""
        env = env or EnvironmentOverrides()
        updates = {}
        if env.vm_ip:
            updates["default_vm_ip"] = env.vm_ip
        if env.host_interface:
            updates["default_interface"] = env.host_interface
        if not updates:
            return self

        try:
            forwarding = ForwardingConfig(**{**self.forwarding.model_dump(), **updates})
        except Exception as e:
            raise ConfigurationError(
                "Invalid VM_IP / HOST_INTERFACE environment override",
                details=[str(e)],
            ) from e
        return self.model_copy(update={"forwarding": forwarding})

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvironmentOverrides(BaseSettings):
    """Overrides read from the environment, as the shell tooling honours."""

    vm_ip: Optional[str] = Field(None, alias="VM_IP")
    host_interface: Optional[str] = Field(None, alias="HOST_INTERFACE")

    model_config = SettingsConfigDict(extra="ignore")


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# LimaWAN Configuration
# Every key is optional; the values below are the defaults.

# pf artifacts
anchor:
  name: limawan
  path: /etc/pf.anchors/limawan
  main_conf_path: /etc/pf.conf
  backup_path: /etc/pf.conf.bak

# Forwarding defaults and limits
# VM_IP and HOST_INTERFACE environment variables override the defaults.
forwarding:
  default_vm_ip: 192.168.105.10
  default_interface: en0
  vm_subnet: 192.168.105.0/24
  external_port_range: 1024-65535  # privileged ports are refused

# Lock serialising pf.conf changes across invocations
lock:
  path: /var/run/limawan.lock
  timeout_seconds: 30

# pf control tool
engine:
  pfctl_path: pfctl
  command_timeout: 30

# Audit trail (JSON lines)
audit:
  enabled: true
  log_path: /var/log/limawan/audit.log
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Args:
        path: Path to create config file
        force: Overwrite if exists

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(get_example_config())
        os.chmod(path, 0o644)
    except OSError as e:
        raise ConfigurationError(
            f"Cannot write configuration file: {path}",
            hint="Check directory permissions or run with sudo",
            details=[str(e)],
        ) from e
