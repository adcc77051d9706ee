"""Supervised inference backends and their transports."""

from voxline.backends.base import BackendTransport, InferenceRequest, InferenceResponse
from voxline.backends.registry import create_transport, register_builtins, register_transport, transport_kinds
from voxline.backends.supervisor import BackendSlot, BackendState, BackendSupervisor

__all__ = [
    "BackendTransport",
    "BackendSlot",
    "BackendState",
    "BackendSupervisor",
    "InferenceRequest",
    "InferenceResponse",
    "create_transport",
    "register_builtins",
    "register_transport",
    "transport_kinds",
]
