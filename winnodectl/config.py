"""Operator configuration management.

Configuration is loaded from multiple sources with the following precedence:
1. Environment variables (``WNC_*``, a ``.env`` file is honoured)
2. Configuration files
3. Default values
"""
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List, Union
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, validator

from winnodectl.instance import PlatformType

logger = logging.getLogger("winnodectl.config")

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_CONFIG_PATHS = [
    Path("/etc/winnodectl/config.yaml"),
    Path("~/.config/winnodectl/config.yaml").expanduser(),
    Path("winnodectl.yaml").absolute(),
]

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "WNC_SSH_PORT": ("ssh", "port"),
    "WNC_SSH_CONNECT_TIMEOUT": ("ssh", "connect_timeout"),
    "WNC_SSH_KEY_PATH": ("ssh", "key_path"),
    "WNC_RETRY_COUNT": ("retry", "count"),
    "WNC_RETRY_INTERVAL": ("retry", "interval"),
    "WNC_RETRY_TIMEOUT": ("retry", "timeout"),
    "WNC_REQUEUE_AFTER": ("retry", "requeue_after"),
    "WNC_SERVICE_CIDR": ("network", "service_cidr"),
    "WNC_OVERLAY_CONFIGURATION_DELAY": ("network", "overlay_configuration_delay"),
    "WNC_VXLAN_PORT": ("network", "vxlan_port"),
    "WATCH_NAMESPACE": ("cluster", "watch_namespace"),
    "WNC_PLATFORM": ("cluster", "platform"),
    "WNC_MIN_HEALTHY_COUNT": ("cluster", "min_healthy_count"),
    "WNC_PAYLOAD_DIR": ("cluster", "payload_dir"),
    "WNC_LOG_LEVEL": ("logging", "level"),
    "WNC_LOG_FILE": ("logging", "file"),
}


class SSHConfig(BaseModel):
    """SSH connection configuration."""
    port: int = Field(default=22, description="SSH port on the Windows instances")
    connect_timeout: int = Field(
        default=10,
        description="Timeout of a single connection attempt in seconds"
    )
    key_path: Optional[str] = Field(
        default=None,
        description="Local private key, used instead of the cluster secret by one-shot commands"
    )

    @validator('key_path')
    def expand_key_path(cls, v: Optional[str]) -> Optional[str]:
        """Expand the user home directory in the key path."""
        return os.path.expanduser(v) if v else v


class RetryConfig(BaseModel):
    """Polling and retry budgets."""
    count: int = Field(default=20, description="Attempts for bounded polls")
    interval: float = Field(default=15.0, description="Seconds between poll attempts")
    timeout: float = Field(default=600.0, description="Upper bound for long waits in seconds")
    resource_change_timeout: float = Field(
        default=120.0,
        description="Upper bound when waiting for a cluster object to change"
    )
    connect_interval: float = Field(default=60.0, description="Seconds between SSH connection attempts")
    connect_timeout: float = Field(default=600.0, description="Total SSH connection budget in seconds")
    requeue_after: float = Field(
        default=300.0,
        description="Delay before re-checking a machine whose deletion was deferred"
    )


class NetworkConfig(BaseModel):
    """Cluster network settings used when configuring nodes."""
    service_cidr: Optional[str] = Field(
        default=None,
        description="Service network override, read from the cluster network object when unset"
    )
    overlay_configuration_delay: float = Field(
        default=120.0,
        description="Seconds to wait after the overlay service starts before reconnecting"
    )
    vxlan_port: Optional[str] = Field(
        default=None,
        description="VXLAN port override, read from the network operator configuration when unset"
    )


class ClusterConfig(BaseModel):
    """Cluster-wide operator settings."""
    watch_namespace: str = Field(default="openshift-windows-machine-config-operator")
    machine_api_namespace: str = Field(default="openshift-machine-api")
    platform: PlatformType = Field(default=PlatformType.AWS)
    min_healthy_count: int = Field(
        default=1,
        description="Healthy machines that must remain in a machine set during replacement"
    )
    payload_dir: str = Field(
        default="/payload",
        description="Local directory holding the binaries and scripts staged on instances"
    )

    @validator('min_healthy_count')
    def positive_floor(cls, v: int) -> int:
        if v < 1:
            raise ValueError("min_healthy_count must be at least 1")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


class OperatorConfig(BaseModel):
    """winnodectl operator configuration."""
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        extra = "ignore"

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'OperatorConfig':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if config_path.exists():
                config_data = cls._load_config_file(config_path)
            else:
                logger.warning(f"Config file {config_path} not found, using defaults")
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        cls._apply_env_overrides(config_data)
        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}

    @staticmethod
    def _apply_env_overrides(config_data: Dict[str, Any]) -> None:
        for env_name, (section, field_name) in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value is None or value == "":
                continue
            config_data.setdefault(section, {})[field_name] = value

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = self.dict(exclude_none=True)
        config_dict["cluster"]["platform"] = self.cluster.platform.value

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)


# Global configuration instance
_config: Optional[OperatorConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> OperatorConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = OperatorConfig.load(config_path)
    return _config


def set_config(config: Optional[OperatorConfig]) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
