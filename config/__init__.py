"""Configuration module for the agent swarm."""
from config.models import (
    AgentConfig,
    BrowserConfig,
    LiveStreamConfig,
    ModelConfig,
    MonitorConfig,
    StorageConfig,
    StoreConfig,
    SupervisorConfig,
    SwarmConfig,
    load_config,
)

__all__ = [
    "AgentConfig",
    "BrowserConfig",
    "LiveStreamConfig",
    "ModelConfig",
    "MonitorConfig",
    "StorageConfig",
    "StoreConfig",
    "SupervisorConfig",
    "SwarmConfig",
    "load_config",
]
