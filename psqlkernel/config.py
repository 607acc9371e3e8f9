"""App configuration loading helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .connections import DEFAULT_IDLE_TIMEOUT, DEFAULT_POOL_SIZE
from .history import DEFAULT_HISTORY_LIMIT
from .models import ConnectionProfile, SshTunnelConfig, SslMode
from .streaming import DEFAULT_BATCH_SIZE, DEFAULT_MAX_ROWS_BEFORE_STREAMING

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "psqlkernel" / "config.toml"


class PoolSettings(BaseModel):
    """Sizing for ephemeral connection pools."""

    max_size: int = Field(default=DEFAULT_POOL_SIZE, ge=1)
    idle_timeout: float = Field(default=DEFAULT_IDLE_TIMEOUT, gt=0)


class StreamingSettings(BaseModel):
    """When and how large SELECTs are streamed."""

    enabled: bool = True
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    max_rows_before_streaming: int = Field(default=DEFAULT_MAX_ROWS_BEFORE_STREAMING, ge=0)


class SshTunnelSettings(BaseModel):
    host: str
    username: str
    port: int = 22
    private_key_path: str | None = None


class ConnectionProfileConfig(BaseModel):
    """Connection profile configuration stored in config.toml."""

    id: str
    name: str | None = None
    host: str = "localhost"
    port: int = 5432
    database: str | None = None
    username: str | None = None
    sslmode: SslMode = SslMode.DISABLE
    ssl_cert_path: str | None = None
    ssl_key_path: str | None = None
    ssl_root_cert_path: str | None = None
    statement_timeout: int | None = None
    connect_timeout: float = 5.0
    application_name: str = "psqlkernel"
    options: str | None = None
    ssh: SshTunnelSettings | None = None

    def to_profile(self) -> ConnectionProfile:
        """Build the immutable runtime profile."""

        ssh = None
        if self.ssh is not None:
            ssh = SshTunnelConfig(
                host=self.ssh.host,
                username=self.ssh.username,
                port=self.ssh.port,
                private_key_path=self.ssh.private_key_path,
            )
        return ConnectionProfile(
            id=self.id,
            name=self.name,
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            sslmode=self.sslmode,
            ssl_cert_path=self.ssl_cert_path,
            ssl_key_path=self.ssl_key_path,
            ssl_root_cert_path=self.ssl_root_cert_path,
            statement_timeout=self.statement_timeout,
            connect_timeout=self.connect_timeout,
            application_name=self.application_name,
            options=self.options,
            ssh=ssh,
        )


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    pool: PoolSettings = Field(default_factory=PoolSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    history_limit: int = Field(default=DEFAULT_HISTORY_LIMIT, ge=1)
    profiles: list[ConnectionProfileConfig] = Field(default_factory=list)

    def profile(self, name_or_id: str) -> ConnectionProfileConfig:
        """Look a profile up by id, then by display name."""

        for profile in self.profiles:
            if profile.id == name_or_id:
                return profile
        for profile in self.profiles:
            if profile.name == name_or_id:
                return profile
        raise ValueError(f"Profile '{name_or_id}' not found.")

    def with_profile(self, profile: ConnectionProfileConfig) -> AppConfig:
        """Return a copy with ``profile`` added or replacing the same id."""

        profiles = [entry for entry in self.profiles if entry.id != profile.id]
        profiles.append(profile)
        return self.model_copy(update={"profiles": profiles})

    def without_profile(self, profile_id: str) -> AppConfig:
        profiles = [entry for entry in self.profiles if entry.id != profile_id]
        return self.model_copy(update={"profiles": profiles})


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        raw = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        LOG.warning("Ignoring unreadable config file", extra={"path": str(path or CONFIG_FILE)})
        return AppConfig()

    data: dict[str, object] = {}
    for section, model in (("pool", PoolSettings), ("streaming", StreamingSettings)):
        value = raw.get(section)
        if isinstance(value, dict):
            try:
                data[section] = model.model_validate(value)
            except ValidationError:
                LOG.warning("Ignoring invalid config section", extra={"section": section})
    history_limit = raw.get("history_limit")
    if isinstance(history_limit, int) and history_limit > 0:
        data["history_limit"] = history_limit

    profiles: list[ConnectionProfileConfig] = []
    entries = raw.get("profiles")
    if isinstance(entries, list):
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                profiles.append(ConnectionProfileConfig.model_validate(entry))
            except ValidationError:
                LOG.warning("Skipping invalid profile", extra={"profile": entry.get("id") or entry.get("name")})
    data["profiles"] = profiles
    return AppConfig(**data)


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Persist configuration to disk."""

    target = path or CONFIG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [f"history_limit = {config.history_limit}", ""]
    lines.append("[pool]")
    lines.append(f"max_size = {config.pool.max_size}")
    lines.append(f"idle_timeout = {config.pool.idle_timeout}")
    lines.append("")
    lines.append("[streaming]")
    lines.append(f"enabled = {str(config.streaming.enabled).lower()}")
    lines.append(f"batch_size = {config.streaming.batch_size}")
    lines.append(f"max_rows_before_streaming = {config.streaming.max_rows_before_streaming}")
    for profile in config.profiles:
        lines.append("")
        lines.append("[[profiles]]")
        lines.append(f"id = {_quote(profile.id)}")
        if profile.name:
            lines.append(f"name = {_quote(profile.name)}")
        lines.append(f"host = {_quote(profile.host)}")
        lines.append(f"port = {profile.port}")
        for key in ("database", "username", "ssl_cert_path", "ssl_key_path", "ssl_root_cert_path", "options"):
            value = getattr(profile, key)
            if value:
                lines.append(f"{key} = {_quote(value)}")
        lines.append(f"sslmode = {_quote(profile.sslmode.value)}")
        if profile.statement_timeout is not None:
            lines.append(f"statement_timeout = {profile.statement_timeout}")
        lines.append(f"connect_timeout = {profile.connect_timeout}")
        lines.append(f"application_name = {_quote(profile.application_name)}")
        if profile.ssh is not None:
            lines.append("")
            lines.append("[profiles.ssh]")
            lines.append(f"host = {_quote(profile.ssh.host)}")
            lines.append(f"port = {profile.ssh.port}")
            lines.append(f"username = {_quote(profile.ssh.username)}")
            if profile.ssh.private_key_path:
                lines.append(f"private_key_path = {_quote(profile.ssh.private_key_path)}")
    target.write_text("\n".join(lines) + "\n")


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    return raw if isinstance(raw, dict) else {}


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "ConnectionProfileConfig",
    "PoolSettings",
    "SshTunnelSettings",
    "StreamingSettings",
    "load_config",
    "save_config",
]
