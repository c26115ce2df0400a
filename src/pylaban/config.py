"""Client configuration for pylaban."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pylaban import _constants as c
from pylaban.exceptions import LabanConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(env: Any, key: str) -> float | None:
    value = env.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise LabanConfigError(f"{key} must be numeric, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class MeshProfile:
    """Local mesh relay tuning.

    Intervals and TTLs are in seconds, distances in meters.
    """

    range_m: float = c.DEFAULT_MESH_RANGE_M
    nearby_radius_m: float = c.NEARBY_RECORD_RADIUS_M
    presence_interval: float = c.PRESENCE_INTERVAL_S
    discovery_interval: float = c.DISCOVERY_INTERVAL_S
    poll_interval: float = c.POLL_INTERVAL_S
    presence_ttl: float = c.PRESENCE_TTL_S
    request_ttl: float = c.REQUEST_TTL_S
    push_ttl: float = c.PUSH_TTL_S
    max_local_records: int = c.MAX_LOCAL_RECORDS
    max_received_records: int = c.MAX_RECEIVED_RECORDS

    def __post_init__(self) -> None:
        timings = (
            "presence_interval",
            "discovery_interval",
            "poll_interval",
            "presence_ttl",
            "request_ttl",
            "push_ttl",
        )
        for name in timings:
            if getattr(self, name) <= 0:
                raise LabanConfigError(f"mesh {name} must be > 0")
        if self.range_m < 0 or self.nearby_radius_m < 0:
            raise LabanConfigError("mesh distances must be >= 0")
        if self.max_local_records < 1 or self.max_received_records < 1:
            raise LabanConfigError("mesh record bounds must be >= 1")


@dataclasses.dataclass(frozen=True)
class LabanConfig:
    """Device configuration.

    Parameters
    ----------
    backend_url : str
        Base URL of the PostgREST-style backend (e.g. a Supabase project URL).
        Empty means no remote backend is available.
    api_key : str
        API key sent as ``apikey`` and bearer token.
    request_timeout : float
        Seconds before a remote call is abandoned as a transient failure.
    mqtt_enabled : bool
        Enable the MQTT live-change feed used by subscriptions.
    mqtt_host : str or None
        MQTT broker host carrying table change events.
    mqtt_port : int
        MQTT broker port.
    mqtt_tls : bool
        Use TLS for the broker connection.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_topic_prefix : str
        Change events for table ``t`` arrive on ``<prefix>/<t>``.
    storage_dir : str or None
        Directory for the durable queue/cache store. ``None`` keeps
        everything in memory.
    mesh_dir : str or None
        Directory used as the shared mesh medium. ``None`` uses an
        in-process medium.
    probe_url : str or None
        URL probed to detect connectivity. Defaults to ``backend_url``.
    probe_interval : float
        Seconds between connectivity probes.
    cache_ttl : float
        Default lifetime of cached query results in seconds.
    offline_refresh_interval : float
        Seconds between cached-data re-serves while offline.
    device_id : str or None
        Stable mesh identity. Generated when unset.
    entity_tables : dict
        Overrides for the entity type → remote table mapping.
    mesh : MeshProfile
        Mesh relay tuning.
    """

    backend_url: str = ""
    api_key: str = ""
    request_timeout: float = c.DEFAULT_REQUEST_TIMEOUT_S
    mqtt_enabled: bool = False
    mqtt_host: str | None = None
    mqtt_port: int = 8883
    mqtt_tls: bool = True
    mqtt_keepalive: int = 120
    mqtt_topic_prefix: str = "laban"
    storage_dir: str | None = None
    mesh_dir: str | None = None
    probe_url: str | None = None
    probe_interval: float = c.DEFAULT_PROBE_INTERVAL_S
    cache_ttl: float = c.DEFAULT_CACHE_TTL_S
    offline_refresh_interval: float = c.DEFAULT_OFFLINE_REFRESH_S
    device_id: str | None = None
    entity_tables: dict[str, str] = dataclasses.field(default_factory=dict)
    mesh: MeshProfile = dataclasses.field(default_factory=MeshProfile)

    def __post_init__(self) -> None:
        if self.cache_ttl < 0:
            raise LabanConfigError("cache_ttl must be >= 0")
        if self.offline_refresh_interval <= 0:
            raise LabanConfigError("offline_refresh_interval must be > 0")
        if self.mqtt_enabled and not self.mqtt_host:
            raise LabanConfigError("mqtt_enabled requires mqtt_host")

    @property
    def effective_probe_url(self) -> str | None:
        return self.probe_url or self.backend_url or None

    def table_for(self, entity_type: str) -> str:
        return c.table_for(entity_type, self.entity_tables)

    @classmethod
    def from_env(cls, **overrides: Any) -> LabanConfig:
        """Create configuration from ``LABAN_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        mesh_kwargs: dict[str, Any] = {}
        range_env = _env_float(env, "LABAN_MESH_RANGE_M")
        if range_env is not None:
            mesh_kwargs["range_m"] = range_env

        mesh_overrides = overrides.pop("mesh", None)
        if isinstance(mesh_overrides, dict):
            mesh_kwargs.update(mesh_overrides)
        elif isinstance(mesh_overrides, MeshProfile):
            mesh_kwargs = dataclasses.asdict(mesh_overrides)

        mesh = MeshProfile(**mesh_kwargs) if mesh_kwargs else MeshProfile()

        _ENV_CONFIG_MAP = {
            "LABAN_BACKEND_URL": "backend_url",
            "LABAN_API_KEY": "api_key",
            "LABAN_MQTT_HOST": "mqtt_host",
            "LABAN_MQTT_TOPIC_PREFIX": "mqtt_topic_prefix",
            "LABAN_STORAGE_DIR": "storage_dir",
            "LABAN_MESH_DIR": "mesh_dir",
            "LABAN_PROBE_URL": "probe_url",
            "LABAN_DEVICE_ID": "device_id",
        }
        config_kwargs: dict[str, Any] = {"mesh": mesh}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_FLOAT_MAP = {
            "LABAN_REQUEST_TIMEOUT": "request_timeout",
            "LABAN_PROBE_INTERVAL": "probe_interval",
            "LABAN_CACHE_TTL": "cache_ttl",
            "LABAN_OFFLINE_REFRESH_INTERVAL": "offline_refresh_interval",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            value = _env_float(env, env_key)
            if value is not None and field_name not in overrides:
                config_kwargs[field_name] = value

        port_env = env.get("LABAN_MQTT_PORT")
        if port_env is not None and "mqtt_port" not in overrides:
            try:
                config_kwargs["mqtt_port"] = int(port_env)
            except ValueError as exc:
                raise LabanConfigError(f"LABAN_MQTT_PORT must be an integer, got {port_env!r}") from exc

        if "mqtt_enabled" not in overrides:
            config_kwargs["mqtt_enabled"] = _env_bool(env.get("LABAN_MQTT_ENABLED"), False)
        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("LABAN_MQTT_TLS"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
