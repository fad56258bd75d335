"""Configuration management for offlinectl.

Configuration is loaded once per run with the following precedence:
1. Environment variables (``OFFLINECTL_*``, a ``.env`` file is honoured)
2. The first configuration file found (explicit path, then the defaults)
3. Default values

The resulting object is immutable and passed to every component.
"""
import ipaddress
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

from .modules.errors import ConfigError

logger = logging.getLogger("offline.config")

DEFAULT_CONFIG_PATHS = [
    Path("offlinectl.yaml"),
    Path("~/.config/offlinectl/config.yaml"),
    Path("/etc/offlinectl/config.yaml"),
]

ENV_PREFIX = "OFFLINECTL_"

DEBIAN_PACKAGES = [
    "python3", "python3-pip", "conntrack", "socat", "ebtables", "ethtool", "ipset", "ipvsadm",
    "chrony", "nfs-common", "curl", "rsync", "tar", "unzip", "xfsprogs", "libseccomp2", "gnupg",
]

REDHAT_PACKAGES = [
    "python3", "python3-pip", "conntrack-tools", "socat", "ebtables", "ethtool", "ipset", "ipvsadm",
    "chrony", "nfs-utils", "curl", "rsync", "tar", "unzip", "xfsprogs", "device-mapper-libs",
    "libseccomp", "nss", "openssl",
]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class FleetSettings(_Frozen):
    """Target nodes and how to reach them."""
    control_plane: List[str] = Field(default_factory=list, description="Control-plane node addresses")
    workers: List[str] = Field(default_factory=list, description="Worker node addresses")
    ssh_user: str = "root"
    ssh_password: Optional[SecretStr] = Field(default=None, description="Password used once to push the public key")
    ssh_port: int = 22
    key_path: str = "~/.ssh/id_rsa"
    connect_timeout: int = 10
    command_timeout: int = 600

    @field_validator('control_plane', 'workers')
    @classmethod
    def validate_addresses(cls, v: List[str]) -> List[str]:
        for address in v:
            try:
                ipaddress.ip_address(address)
            except ValueError:
                raise ValueError(f"Invalid IP address: {address}")
        return v

    @field_validator('key_path')
    @classmethod
    def expand_key_path(cls, v: str) -> str:
        return os.path.expanduser(v)

    @model_validator(mode='after')
    def unique_addresses(self) -> 'FleetSettings':
        seen = set()
        for address in list(self.control_plane) + list(self.workers):
            if address in seen:
                raise ValueError(f"Address {address} is listed more than once")
            seen.add(address)
        return self


class ServiceSettings(_Frozen):
    """Local registry and file server that republish the bundle."""
    registry_host: str = "192.168.85.161"
    registry_port: int = 5000
    file_server_host: str = "192.168.85.161"
    file_server_port: int = 8080
    registry_image: str = "registry:latest"
    file_server_default_tag: str = "1.28.0-alpine"

    @property
    def registry_address(self) -> str:
        return f"{self.registry_host}:{self.registry_port}"

    @property
    def files_url(self) -> str:
        return f"http://{self.file_server_host}:{self.file_server_port}"


class RetrySettings(_Frozen):
    max_attempts: int = Field(default=3, ge=1)


class LoggingSettings(_Frozen):
    level: str = "INFO"
    file: Optional[str] = None
    max_size_mb: int = 100
    backup_count: int = 5


class VerificationSettings(_Frozen):
    kubeconfig: Optional[str] = Field(default=None, description="Query the cluster through this kubeconfig instead of SSH")
    kubectl: str = "/usr/local/bin/kubectl"


class PackageSettings(_Frozen):
    debian: List[str] = Field(default_factory=lambda: list(DEBIAN_PACKAGES))
    redhat: List[str] = Field(default_factory=lambda: list(REDHAT_PACKAGES))


class InterpreterSettings(_Frozen):
    candidates: List[str] = Field(default_factory=lambda: ["3.13", "3.12", "3.11", "3.10"])
    minimum: str = "3.10"
    maximum: str = "3.13"


class OfflineConfig(_Frozen):
    """offlinectl configuration."""
    workdir: Path = Path("/root/kubespray-offline")
    remote_workdir: str = "/root/kubespray-offline"
    kubespray_version: str = "v2.29.0"
    kube_version: str = "1.32.9"
    kubespray_repo: str = "https://github.com/kubernetes-sigs/kubespray.git"
    parallelism: int = Field(default=5, ge=1)
    fail_fast: bool = True
    fleet: FleetSettings = Field(default_factory=FleetSettings)
    services: ServiceSettings = Field(default_factory=ServiceSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    packages: PackageSettings = Field(default_factory=PackageSettings)
    interpreter: InterpreterSettings = Field(default_factory=InterpreterSettings)

    @field_validator('workdir')
    @classmethod
    def expand_workdir(cls, v: Path) -> Path:
        return Path(os.path.expanduser(str(v)))

    @property
    def source_dir(self) -> Path:
        return self.workdir / "kubespray"

    @property
    def archive_path(self) -> Path:
        return self.workdir / f"kubespray-offline-{self.kubespray_version}.tar.gz"

    @property
    def state_path(self) -> Path:
        return self.workdir / "state" / "fleet-state.json"

    def require_fleet(self) -> None:
        """Validate the settings only the install phase needs."""
        if not self.fleet.control_plane:
            raise ConfigError("At least one control-plane address is required")

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'OfflineConfig':
        """Load configuration from file and environment variables."""
        load_dotenv()
        config_data: Dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser().absolute()
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            config_data = cls._load_config_file(path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        config_data = apply_env_overrides(config_data, os.environ)
        try:
            return cls(**config_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}")

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        logger.debug(f"Loaded configuration from {path}")
        return data


_LIST_FIELDS = {('fleet', 'control_plane'), ('fleet', 'workers'), ('packages', 'debian'), ('packages', 'redhat')}


def _env_key_path(name: str) -> Tuple[str, ...]:
    """``OFFLINECTL_FLEET__SSH_USER`` -> ``('fleet', 'ssh_user')``."""
    return tuple(part.lower() for part in name[len(ENV_PREFIX):].split("__"))


def apply_env_overrides(data: Dict[str, Any], environ) -> Dict[str, Any]:
    """Overlay ``OFFLINECTL_*`` variables onto loaded configuration data.

    Nested keys use ``__`` as delimiter; list fields take comma separated values.
    """
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        keys = _env_key_path(name)
        if not keys or not all(keys):
            continue
        if keys in _LIST_FIELDS:
            value = [item.strip() for item in value.split(",") if item.strip()]
        target = merged
        for key in keys[:-1]:
            target = target.setdefault(key, {})
            if not isinstance(target, dict):
                raise ConfigError(f"Cannot apply {name}: '{key}' is not a section")
        target[keys[-1]] = value
    return merged

