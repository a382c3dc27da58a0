"""
Configuration validation for FlatSync.

Provides pydantic v2 models for validating the file server list and sync
tunables with fail-fast behavior and sensible defaults.
"""

from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional
import logging

log = logging.getLogger('flatsync.config')


class ServerDescriptor(BaseModel):
    """
    One upstream file server.

    Required:
        id: Stable server identifier recorded as field provenance
        priority: Lower number = higher precedence (must be unique)
        base_url: Scheme + host (+ port) the server's relative paths resolve against

    Optional:
        prefix_path: Path prefix for the server's media tree (default: "")
        movies_endpoint: Snapshot path for the movie inventory
        tv_endpoint: Snapshot path for the TV inventory
        enabled: Skip this server entirely when False
    """

    id: str = Field(min_length=1)
    priority: int = Field(ge=0)
    base_url: str
    prefix_path: str = ""
    movies_endpoint: str = "/movies.json"
    tv_endpoint: str = "/tv.json"
    enabled: bool = True

    @field_validator('base_url', mode='after')
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate base_url is an HTTP/HTTPS URL without a doubled scheme."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('base_url must start with http:// or https://')
        if v.count('://') > 1:
            raise ValueError(f'base_url contains more than one scheme: {v}')
        return v.rstrip('/')  # Normalize: remove trailing slash

    @field_validator('prefix_path', mode='after')
    @classmethod
    def validate_prefix_path(cls, v: str) -> str:
        """Normalize prefix_path to '' or '/segment' with no trailing slash."""
        v = v.strip().strip('/')
        return f"/{v}" if v else ""

    def resolve_url(self, path: str, add_prefix: bool = False) -> str:
        """
        Turn a server-relative path into an absolute URL.

        Absolute URLs pass through unchanged.

        Args:
            path: Relative path as advertised in the snapshot
            add_prefix: Insert prefix_path between base URL and path

        Raises:
            ValueError: Empty path or a malformed doubled-scheme URL
        """
        if not path:
            raise ValueError(f"Server {self.id} advertised an empty path")
        if path.startswith(('http://', 'https://')):
            if path.count('://') > 1:
                raise ValueError(f"Malformed URL (doubled scheme): {path}")
            return path
        clean = path.lstrip('/')
        if add_prefix:
            return f"{self.base_url}{self.prefix_path}/{clean}"
        return f"{self.base_url}/{clean}"


class FlatSyncConfig(BaseModel):
    """
    FlatSync configuration with validation.

    Required:
        servers: List of ServerDescriptor (ids and priorities must be unique)

    Optional tunables:
        data_dir: Directory for cache, history and the SQLite record store
        max_workers: Concurrent titles per sync run (default: 4, range: 1-64)
        metadata_timeout: Per-fetch timeout for small payloads (default: 5.0s)
        bulk_timeout: Per-fetch timeout for snapshot payloads (default: 30.0s)
        retry_limit: Retries after the first attempt (default: 3, range: 0-10)
        retry_base_delay / retry_max_delay: Backoff parameters in seconds
        cache_enabled: Disable to run without a response cache
        cache_ttl / hash_cache_ttl: TTLs for regular and placeholder-hash payloads
        primary_caption_language / primary_caption_code: Caption sorted first
        caption_order: Non-primary captions by winning-server precedence then
            declaration order ("declaration"), or by name ("alphabetical")
        history_limit: Sync history entries kept on disk
    """

    servers: list[ServerDescriptor] = Field(min_length=1)

    data_dir: str = "./flatsync-data"
    max_workers: int = Field(default=4, ge=1, le=64)

    metadata_timeout: float = Field(default=5.0, ge=0.5, le=120.0)
    bulk_timeout: float = Field(default=30.0, ge=1.0, le=600.0)

    retry_limit: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0.0, le=60.0)
    retry_max_delay: float = Field(default=10.0, ge=0.0, le=600.0)

    cache_enabled: bool = True
    cache_ttl: int = Field(default=3600, ge=1)
    hash_cache_ttl: int = Field(default=7 * 24 * 3600, ge=1)
    cache_size_limit: int = Field(default=256 * 1024 * 1024, ge=1024 * 1024)

    primary_caption_language: str = "English"
    primary_caption_code: str = "en"
    caption_order: Literal['declaration', 'alphabetical'] = 'declaration'

    history_limit: int = Field(default=10, ge=1, le=500)

    debug_logging: bool = Field(
        default=False,
        description="Enable per-field decision logging (very verbose, troubleshooting only)"
    )

    @field_validator('cache_enabled', 'debug_logging', mode='before')
    @classmethod
    def validate_booleans(cls, v):
        """Ensure boolean fields are actual booleans, not truthy strings."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            lower = v.lower()
            if lower in ('true', '1', 'yes'):
                return True
            if lower in ('false', '0', 'no'):
                return False
            raise ValueError(f"Invalid boolean value: {v}")
        raise ValueError(f"Expected boolean, got {type(v).__name__}")

    @model_validator(mode='after')
    def validate_servers(self):
        """Reject duplicate server ids and duplicate priorities.

        Two servers with the same priority advertising the same field would
        make the winner depend on execution order.
        """
        seen_ids = set()
        seen_priorities = {}
        for server in self.servers:
            if server.id in seen_ids:
                raise ValueError(f"duplicate server id: {server.id}")
            seen_ids.add(server.id)
            if server.priority in seen_priorities:
                raise ValueError(
                    f"servers {seen_priorities[server.priority]} and {server.id} "
                    f"share priority {server.priority}; priorities must be unique"
                )
            seen_priorities[server.priority] = server.id
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        return self

    @property
    def active_servers(self) -> list[ServerDescriptor]:
        """Enabled servers in precedence order (lowest priority number first)."""
        return sorted((s for s in self.servers if s.enabled), key=lambda s: s.priority)

    def get_server(self, server_id: str) -> Optional[ServerDescriptor]:
        for server in self.servers:
            if server.id == server_id:
                return server
        return None

    def log_config(self) -> None:
        """Log the effective configuration."""
        order = ', '.join(f"{s.id}({s.priority})" for s in self.active_servers)
        log.info(
            f"FlatSync config: servers=[{order}], data_dir={self.data_dir}, "
            f"max_workers={self.max_workers}, "
            f"metadata_timeout={self.metadata_timeout}s, bulk_timeout={self.bulk_timeout}s, "
            f"retry_limit={self.retry_limit}, "
            f"cache={'on' if self.cache_enabled else 'off'} (ttl={self.cache_ttl}s), "
            f"captions={self.primary_caption_language}/{self.caption_order}"
        )
        disabled = [s.id for s in self.servers if not s.enabled]
        if disabled:
            log.info(f"Disabled servers: {disabled}")
        if self.debug_logging:
            log.warning(
                "DEBUG LOGGING ENABLED: every field decision is logged. "
                "Use only for a single troubleshooting run."
            )


class CliSettings(BaseSettings):
    """Command line defaults overridable from FLATSYNC_-prefixed env vars."""

    model_config = SettingsConfigDict(env_prefix="FLATSYNC_")

    config_file: str = "flatsync.json"
    log_level: str = "info"
    log_json: bool = False


def validate_config(config_dict: dict) -> tuple[Optional[FlatSyncConfig], Optional[str]]:
    """
    Validate configuration dictionary and return FlatSyncConfig or error message.

    Args:
        config_dict: Dictionary containing configuration values

    Returns:
        Tuple of (FlatSyncConfig, None) on success,
        or (None, error_message) on validation failure
    """
    try:
        config = FlatSyncConfig(**config_dict)
        return (config, None)
    except ValidationError as e:
        # Extract user-friendly error messages
        errors = []
        for error in e.errors():
            field = '.'.join(str(loc) for loc in error['loc'])
            msg = error['msg']
            errors.append(f"{field}: {msg}" if field else msg)
        error_message = '; '.join(errors)
        return (None, error_message)


# Re-export ValidationError for external use
__all__ = ['ServerDescriptor', 'FlatSyncConfig', 'CliSettings', 'validate_config', 'ValidationError']
