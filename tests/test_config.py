from pathlib import Path

import pytest

from voxline.config import VoxlineConfig, config_from_dict, load_config
from voxline.errors import ConfigError


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("VOXLINE_DATA_DIR", str(tmp_path))
    cfg = config_from_dict({})
    assert isinstance(cfg, VoxlineConfig)
    assert cfg.matcher.merge_threshold == 0.9
    assert cfg.pipeline.sample_rate == 48000
    assert cfg.pipeline.target_lufs == -18.0
    assert cfg.pipeline.output_format == "ogg"
    assert cfg.supervisor.checkout_timeout_s == 30.0
    assert cfg.verify.threshold is None
    assert cfg.store.lines_dir == tmp_path / "lines"
    assert cfg.voices.root == tmp_path / "voices"
    assert cfg.store.database_url == f"sqlite:///{tmp_path / 'voxline.db'}"


def test_load_yaml(tmp_path):
    path = tmp_path / "voxline.yaml"
    path.write_text(
        """
matcher:
  merge_threshold: 0.85
pipeline:
  output_format: flac
  lowpass_hz: 10500
backends:
  - name: xtts-0
    command: ["python", "-m", "xtts_server"]
    port: 8020
    capacity: 2
  - name: whisper
    role: transcription
    kind: container
    image: whisper:latest
    port: 9000
verify:
  threshold: 0.8
store:
  lines_dir: lines
""",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.matcher.merge_threshold == 0.85
    assert cfg.pipeline.output_format == "flac"
    assert cfg.pipeline.lowpass_hz == 10500
    assert [b.name for b in cfg.backends] == ["xtts-0", "whisper"]
    assert cfg.backends[0].capacity == 2
    assert cfg.backends[0].restart_backoff_s == [1.0, 5.0, 15.0]
    assert cfg.backends[1].base_url == "http://127.0.0.1:9000"
    assert cfg.verify.threshold == 0.8
    assert cfg.store.lines_dir == Path("lines")


def test_load_config_from_env_path(tmp_path, monkeypatch):
    path = tmp_path / "c.yaml"
    path.write_text("matcher: {merge_threshold: 0.7}\n", encoding="utf-8")
    monkeypatch.setenv("VOXLINE_CONFIG", str(path))
    assert load_config().matcher.merge_threshold == 0.7


def test_database_url_env_override(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///fallback.db")
    assert config_from_dict({}).store.database_url == "sqlite:///fallback.db"
    monkeypatch.setenv("VOXLINE_DATABASE_URL", "sqlite:///primary.db")
    assert config_from_dict({}).store.database_url == "sqlite:///primary.db"


@pytest.mark.parametrize(
    "data",
    [
        {"matcher": {"merge_threshold": 1.5}},
        {"matcher": {"unknown": 1}},
        {"pipeline": {"output_format": "mp3"}},
        {"pipeline": {"quality": 2}},
        {"pipeline": {"peak_ceiling_dbfs": 3}},
        {"supervisor": {"checkout_timeout_s": 0}},
        {"backends": [{"name": "a"}, {"name": "a"}]},
        {"backends": [{"name": "a", "role": "embedding"}]},
        {"backends": [{"name": "a", "capacity": 0}]},
        {"backends": [{"name": "a", "restart_backoff_s": []}]},
        {"backends": [{"role": "synthesis"}]},
        {"backends": {"name": "a"}},
        {"verify": {"threshold": -0.5}},
        {"surprise": True},
        {"matcher": [1, 2]},
    ],
)
def test_invalid_values_raise(data):
    with pytest.raises(ConfigError):
        config_from_dict(data)


def test_non_mapping_yaml_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)


def test_missing_config_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match="cannot read config"):
        load_config(tmp_path / "absent.yaml")


def test_malformed_yaml_is_config_error(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("matcher: {merge_threshold: 0.7\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(path)


def test_unknown_backend_kind_rejected_at_load():
    with pytest.raises(ConfigError, match="unknown kind 'kubernetes'"):
        config_from_dict({"backends": [{"name": "a", "kind": "kubernetes"}]})


def test_backend_kind_is_case_insensitive():
    cfg = config_from_dict({"backends": [{"name": "a", "kind": " Container ", "image": "tts"}]})
    assert cfg.backends[0].kind == " Container "
