"""Configuration loading for logsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = "logsync-node"


@dataclass
class LogChannelConfig:
    """A named log (e.g. "auditlog") backed by its own store."""

    name: str = "auditlog"
    db_path: str = "~/.logsync/auditlog.db"
    max_events: int = 0  # 0 keeps everything


@dataclass
class SyncTaskConfig:
    """One sync task: which channel, in which directions."""

    channel: str = "auditlog"
    mode: str = "push"  # none, push, pull, pushpull
    lowest_id_mode: str = "none"
    owner_id: str | None = None  # None syncs every owner's logs


@dataclass
class SyncConfig:
    """Configuration for log synchronization with a remote server."""

    enabled: bool = True
    server_url: str = ""
    interval_seconds: int = 60
    timeout_seconds: float = 30.0
    tasks: list[SyncTaskConfig] = field(default_factory=list)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class RepositoryConfig:
    customer: str
    name: str
    path: str
    limit: int | None = None


@dataclass
class ReplicationConfig:
    """Configuration for pulling repository versions from a remote."""

    enabled: bool = False
    server_url: str = ""
    interval_seconds: int = 300
    timeout_seconds: float = 30.0
    repositories: list[RepositoryConfig] = field(default_factory=list)


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    channels: list[LogChannelConfig] = field(
        default_factory=lambda: [LogChannelConfig()]
    )
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    replication: ReplicationConfig = field(default_factory=ReplicationConfig)

    def get_channel(self, name: str) -> LogChannelConfig:
        for channel in self.channels:
            if channel.name == name:
                return channel
        raise KeyError(f"Unknown log channel: {name}")


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with LOGSYNC_ prefix."""
    return os.environ.get(f"LOGSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Node overrides
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if server_url := _get_env("SYNC_SERVER_URL"):
        config.sync.server_url = server_url
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = int(sync_interval)
    if sync_timeout := _get_env("SYNC_TIMEOUT"):
        config.sync.timeout_seconds = float(sync_timeout)

    # Replication overrides
    if repl_enabled := _get_env("REPLICATION_ENABLED"):
        config.replication.enabled = _is_true(repl_enabled)
    if repl_url := _get_env("REPLICATION_SERVER_URL"):
        config.replication.server_url = repl_url
    if repl_interval := _get_env("REPLICATION_INTERVAL"):
        config.replication.interval_seconds = int(repl_interval)

    return config


def _parse_channels(data: list) -> list[LogChannelConfig]:
    """Parse log channel configurations."""
    channels = []
    for channel_data in data:
        name = channel_data["name"]
        channels.append(
            LogChannelConfig(
                name=name,
                db_path=channel_data.get("db_path", f"~/.logsync/{name}.db"),
                max_events=channel_data.get("max_events", 0),
            )
        )
    return channels


def _parse_tasks(data: list) -> list[SyncTaskConfig]:
    """Parse sync task configurations."""
    tasks = []
    for task_data in data:
        tasks.append(
            SyncTaskConfig(
                channel=task_data["channel"],
                mode=str(task_data.get("mode", "push")).lower(),
                lowest_id_mode=str(task_data.get("lowest_id_mode", "none")).lower(),
                owner_id=task_data.get("owner_id"),
            )
        )
    return tasks


def _parse_repositories(data: list) -> list[RepositoryConfig]:
    """Parse replicated repository configurations."""
    return [
        RepositoryConfig(
            customer=repo_data["customer"],
            name=repo_data["name"],
            path=repo_data["path"],
            limit=repo_data.get("limit"),
        )
        for repo_data in data
    ]


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse node config
            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            # Parse log channels
            if "channels" in data:
                config.channels = _parse_channels(data["channels"])

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    server_url=sync_data.get("server_url", config.sync.server_url),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    tasks=_parse_tasks(sync_data.get("tasks", [])),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

            # Parse replication config
            if "replication" in data:
                repl_data = data["replication"]
                config.replication = ReplicationConfig(
                    enabled=repl_data.get("enabled", config.replication.enabled),
                    server_url=repl_data.get("server_url", config.replication.server_url),
                    interval_seconds=repl_data.get(
                        "interval_seconds", config.replication.interval_seconds
                    ),
                    timeout_seconds=repl_data.get(
                        "timeout_seconds", config.replication.timeout_seconds
                    ),
                    repositories=_parse_repositories(repl_data.get("repositories", [])),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    # Default to pushing every channel if no tasks configured
    if not config.sync.tasks:
        config.sync.tasks = [
            SyncTaskConfig(channel=channel.name) for channel in config.channels
        ]

    return config
