"""Configuration schema and YAML loader.

The configuration is a small tree of dataclasses. ``load_config`` reads a YAML
file, applies environment overrides and validates values; every section is
optional and falls back to the defaults below. Example::

    matcher:
      merge_threshold: 0.9
    pipeline:
      sample_rate: 48000
      target_lufs: -18
      output_format: ogg
    backends:
      - name: xtts-0
        role: synthesis
        kind: local
        command: ["python", "-m", "xtts_server", "--port", "8020"]
        port: 8020
        capacity: 2
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from voxline.errors import ConfigError

__all__ = [
    "MatcherConfig",
    "PipelineConfig",
    "SupervisorConfig",
    "BackendConfig",
    "StoreConfig",
    "VoicesConfig",
    "VerifyConfig",
    "VoxlineConfig",
    "load_config",
    "config_from_dict",
]

OUTPUT_FORMATS = ("ogg", "flac", "wav")
BACKEND_ROLES = ("synthesis", "transcription")


@dataclass(slots=True)
class MatcherConfig:
    """Dialogue near-duplicate merging."""

    merge_threshold: float = 0.9


@dataclass(slots=True)
class PipelineConfig:
    """Audio post-processing settings."""

    sample_rate: int = 48000
    target_lufs: float = -18.0
    peak_ceiling_dbfs: float = -1.0
    trim_silence: bool = True
    silence_threshold: float = 0.01
    filter_enabled: bool = True
    highpass_hz: float | None = 80.0
    lowpass_hz: float | None = None
    output_format: str = "ogg"
    quality: float = 0.6


@dataclass(slots=True)
class SupervisorConfig:
    """Backend checkout settings shared by all backends."""

    checkout_timeout_s: float = 30.0


@dataclass(slots=True)
class BackendConfig:
    """One supervised inference backend."""

    name: str
    role: str = "synthesis"
    kind: str = "local"
    command: list[str] = field(default_factory=list)
    image: str | None = None
    host: str = "127.0.0.1"
    port: int = 8020
    capacity: int = 1
    startup_timeout_s: float = 120.0
    heartbeat_interval_s: float = 10.0
    max_consecutive_failures: int = 3
    restart_backoff_s: list[float] = field(default_factory=lambda: [1.0, 5.0, 15.0])
    max_restarts: int = 5
    inference_timeout_s: float = 60.0
    idle_timeout_s: float | None = None
    lazy_start: bool = False
    env: dict[str, str] = field(default_factory=dict)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(slots=True)
class StoreConfig:
    """Persistence locations."""

    database_url: str = ""
    lines_dir: Path = Path("data/lines")


@dataclass(slots=True)
class VoicesConfig:
    """Voice sample catalog and automatic assignment pools.

    Pool entries are ``"<name>"`` for global voices or ``"<game>/<name>"``.
    """

    root: Path = Path("data/voices")
    male_voices: list[str] = field(default_factory=list)
    female_voices: list[str] = field(default_factory=list)
    language: str = "en"


@dataclass(slots=True)
class VerifyConfig:
    """Transcription-based verification of generated lines."""

    threshold: float | None = None


@dataclass(slots=True)
class VoxlineConfig:
    """Root configuration object."""

    data_dir: Path = Path("data")
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    backends: list[BackendConfig] = field(default_factory=list)
    store: StoreConfig = field(default_factory=StoreConfig)
    voices: VoicesConfig = field(default_factory=VoicesConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)


def _section(cls: type, raw: Any, name: str) -> Any:
    """Build dataclass ``cls`` from mapping ``raw`` rejecting unknown keys."""

    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"unknown keys in '{name}': {', '.join(unknown)}")
    try:
        return cls(**raw)
    except TypeError as exc:
        raise ConfigError(f"invalid section '{name}': {exc}") from exc


def _kind_key(kind: str) -> str:
    return kind.strip().lower()


def _validate(cfg: VoxlineConfig) -> None:
    if not 0.0 <= cfg.matcher.merge_threshold <= 1.0:
        raise ConfigError("matcher.merge_threshold must be within [0, 1]")
    p = cfg.pipeline
    if p.sample_rate <= 0:
        raise ConfigError("pipeline.sample_rate must be positive")
    if p.output_format not in OUTPUT_FORMATS:
        raise ConfigError(f"pipeline.output_format must be one of {OUTPUT_FORMATS}")
    if not -0.1 <= p.quality <= 1.0:
        raise ConfigError("pipeline.quality must be within [-0.1, 1.0]")
    if p.peak_ceiling_dbfs > 0:
        raise ConfigError("pipeline.peak_ceiling_dbfs must be <= 0")
    if cfg.supervisor.checkout_timeout_s <= 0:
        raise ConfigError("supervisor.checkout_timeout_s must be positive")
    from voxline.backends.registry import transport_kinds

    kinds = transport_kinds()
    seen: set[str] = set()
    for b in cfg.backends:
        if b.name in seen:
            raise ConfigError(f"duplicate backend name: {b.name}")
        seen.add(b.name)
        if b.role not in BACKEND_ROLES:
            raise ConfigError(f"backend '{b.name}': role must be one of {BACKEND_ROLES}")
        if _kind_key(b.kind) not in kinds:
            raise ConfigError(f"backend '{b.name}': unknown kind '{b.kind}' (known: {', '.join(kinds)})")
        if b.capacity < 1:
            raise ConfigError(f"backend '{b.name}': capacity must be >= 1")
        if b.max_consecutive_failures < 1:
            raise ConfigError(f"backend '{b.name}': max_consecutive_failures must be >= 1")
        if not b.restart_backoff_s:
            raise ConfigError(f"backend '{b.name}': restart_backoff_s must not be empty")
    t = cfg.verify.threshold
    if t is not None and not 0.0 <= t <= 1.0:
        raise ConfigError("verify.threshold must be within [0, 1]")


def config_from_dict(data: dict[str, Any] | None) -> VoxlineConfig:
    """Build and validate a :class:`VoxlineConfig` from plain data.

    Environment overrides: ``VOXLINE_DATA_DIR`` replaces ``data_dir`` and
    ``VOXLINE_DATABASE_URL`` (or ``DATABASE_URL``) replaces
    ``store.database_url``. Paths left at their defaults are placed under the
    data directory.

    Raises:
        ConfigError: If a section is malformed or a value is out of range.
    """

    data = dict(data or {})
    known = {f.name for f in fields(VoxlineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown top-level keys: {', '.join(unknown)}")

    data_dir = Path(os.getenv("VOXLINE_DATA_DIR", data.get("data_dir", "data"))).expanduser()

    store_raw = dict(data.get("store") or {})
    if "lines_dir" in store_raw:
        store_raw["lines_dir"] = Path(store_raw["lines_dir"]).expanduser()
    store = _section(StoreConfig, store_raw, "store")
    if "lines_dir" not in store_raw:
        store.lines_dir = data_dir / "lines"
    env_url = os.getenv("VOXLINE_DATABASE_URL", os.getenv("DATABASE_URL", ""))
    if env_url:
        store.database_url = env_url
    if not store.database_url:
        store.database_url = f"sqlite:///{data_dir / 'voxline.db'}"

    voices_raw = dict(data.get("voices") or {})
    if "root" in voices_raw:
        voices_raw["root"] = Path(voices_raw["root"]).expanduser()
    voices = _section(VoicesConfig, voices_raw, "voices")
    if "root" not in voices_raw:
        voices.root = data_dir / "voices"

    raw_backends = data.get("backends") or []
    if not isinstance(raw_backends, list):
        raise ConfigError("'backends' must be a list")
    backends = [_section(BackendConfig, b, f"backends[{i}]") for i, b in enumerate(raw_backends)]

    cfg = VoxlineConfig(
        data_dir=data_dir,
        matcher=_section(MatcherConfig, data.get("matcher"), "matcher"),
        pipeline=_section(PipelineConfig, data.get("pipeline"), "pipeline"),
        supervisor=_section(SupervisorConfig, data.get("supervisor"), "supervisor"),
        backends=backends,
        store=store,
        voices=voices,
        verify=_section(VerifyConfig, data.get("verify"), "verify"),
    )
    _validate(cfg)
    return cfg


def load_config(path: str | Path | None = None) -> VoxlineConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML file. ``None`` falls back to ``VOXLINE_CONFIG``
            and then to pure defaults.

    Returns:
        Validated configuration.

    Raises:
        ConfigError: If the file cannot be read, is not valid YAML or holds
            invalid settings.
    """

    if path is None:
        env_path = os.getenv("VOXLINE_CONFIG")
        path = Path(env_path) if env_path else None
    if path is None:
        return config_from_dict({})
    src = Path(path)
    try:
        data = yaml.safe_load(src.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"{src}: cannot read config: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"{src}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{src}: top level must be a mapping")
    return config_from_dict(data)
