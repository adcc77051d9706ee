from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure workspace root is importable so `tests.*` helpers resolve
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Ensure src/ is on sys.path so we can import voxline.* / db.* without installing.
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from tests.helpers import FakeFactory, FakeTransport, write_voice  # noqa: E402
from voxline.backends.registry import register_transport  # noqa: E402
from voxline.config import config_from_dict  # noqa: E402
from voxline.service import VoxlineService  # noqa: E402

register_transport("fake", FakeTransport, replace=True)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for var in ("VOXLINE_DATABASE_URL", "DATABASE_URL", "VOXLINE_DATA_DIR", "VOXLINE_CONFIG"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def voices_root(tmp_path: Path) -> Path:
    root = tmp_path / "voices"
    for name in ("alice", "bob", "carol"):
        write_voice(root, "global", name)
    write_voice(root, "skyrim", "guard", transcript=None)
    return root


@pytest.fixture
def make_config(tmp_path: Path, voices_root: Path):
    """Build a validated config rooted in ``tmp_path`` with one fake backend."""

    def _make(backends: list[dict] | None = None, **sections):
        data = {
            "data_dir": str(tmp_path),
            "store": {
                "database_url": f"sqlite:///{tmp_path / 'voxline.db'}",
                "lines_dir": str(tmp_path / "lines"),
            },
            "voices": {
                "root": str(voices_root),
                "male_voices": ["alice", "bob"],
                "female_voices": ["carol"],
            },
            "pipeline": {"output_format": "wav"},
            "supervisor": {"checkout_timeout_s": 2.0},
            "backends": backends
            if backends is not None
            else [
                {
                    "name": "tts-0",
                    "kind": "fake",
                    "startup_timeout_s": 2.0,
                    "heartbeat_interval_s": 0.05,
                    "restart_backoff_s": [0.01],
                }
            ],
        }
        data.update(sections)
        return config_from_dict(data)

    return _make


@pytest.fixture
def make_service(make_config):
    """Return ``(service, factory)`` built from :func:`make_config` with fake transports."""

    def _make(**kwargs):
        factory = FakeFactory()
        service = VoxlineService.from_config(make_config(**kwargs), transport_factory=factory)
        return service, factory

    return _make


@pytest.fixture
def restore_logging():
    """Undo root handlers installed by ``setup_logging`` during a test."""
    import logging

    import logging_setup

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    saved_flag = getattr(logging_setup.setup_logging, "_configured", False)
    logging_setup.setup_logging._configured = False
    yield
    for h in list(root.handlers):
        if h not in saved_handlers:
            root.removeHandler(h)
            h.close()
    root.setLevel(saved_level)
    logging_setup.setup_logging._configured = saved_flag
