"""Transport kinds accepted in ``backends[].kind``.

A kind maps to a callable that turns one :class:`BackendConfig` into a
:class:`BackendTransport`. The built-in ``local`` and ``container`` kinds are
loaded on first use; embedders add their own with :func:`register_transport`
before the configuration is loaded.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from voxline.backends.base import BackendTransport
from voxline.config import BackendConfig
from voxline.errors import ConfigError

__all__ = ["register_transport", "create_transport", "transport_kinds", "register_builtins"]

TransportBuilder = Callable[[BackendConfig], BackendTransport]

_lock = threading.RLock()
_builders: dict[str, TransportBuilder] = {}
_builtins_loaded = False


def _key(kind: str) -> str:
    return kind.strip().lower()


def register_transport(kind: str, builder: TransportBuilder, *, replace: bool = False) -> None:
    """Make ``kind`` usable in backend configs.

    Raises:
        ValueError: If ``kind`` is blank, or already taken and ``replace`` is false.
    """
    key = _key(kind)
    if not key:
        raise ValueError("Transport kind must not be empty")
    with _lock:
        if key in _builders and not replace:
            raise ValueError(f"Transport kind already registered: {key}")
        _builders[key] = builder


def register_builtins() -> None:
    """Register the ``local`` and ``container`` transports once."""
    global _builtins_loaded
    with _lock:
        if _builtins_loaded:
            return
        from voxline.backends.container import ContainerTransport
        from voxline.backends.local import LocalProcessTransport

        _builders.setdefault("local", LocalProcessTransport)
        _builders.setdefault("container", ContainerTransport)
        _builtins_loaded = True


def transport_kinds() -> list[str]:
    register_builtins()
    with _lock:
        return sorted(_builders)


def create_transport(config: BackendConfig) -> BackendTransport:
    """Build the transport for ``config.kind``.

    Raises:
        ConfigError: If no transport is registered for the kind.
    """
    register_builtins()
    with _lock:
        builder = _builders.get(_key(config.kind))
    if builder is None:
        raise ConfigError(
            f"backend '{config.name}': unknown kind '{config.kind}' (known: {', '.join(transport_kinds())})"
        )
    return builder(config)
