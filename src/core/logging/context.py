"""Context variables for structured logging."""

from contextvars import ContextVar
from typing import Dict, Optional

_cycle_id: ContextVar[str] = ContextVar("cycle_id", default="")
_stage_name: ContextVar[str] = ContextVar("stage_name", default="")
_worker_id: ContextVar[str] = ContextVar("worker_id", default="")
_interface: ContextVar[str] = ContextVar("interface", default="")
_message_id: ContextVar[str] = ContextVar("message_id", default="")
_instance_id: ContextVar[str] = ContextVar("instance_id", default="")

CONTEXT_FIELDS = ("cycle_id", "stage", "worker_id", "interface", "message_id", "instance_id")


def set_log_context(
    cycle_id: Optional[str] = None,
    stage: Optional[str] = None,
    worker_id: Optional[str] = None,
    interface: Optional[str] = None,
    message_id: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> None:
    if cycle_id is not None:
        _cycle_id.set(cycle_id)
    if stage is not None:
        _stage_name.set(stage)
    if worker_id is not None:
        _worker_id.set(worker_id)
    if interface is not None:
        _interface.set(interface)
    if message_id is not None:
        _message_id.set(message_id)
    if instance_id is not None:
        _instance_id.set(instance_id)


def get_log_context() -> Dict[str, str]:
    return {
        "cycle_id": _cycle_id.get(),
        "stage": _stage_name.get(),
        "worker_id": _worker_id.get(),
        "interface": _interface.get(),
        "message_id": _message_id.get(),
        "instance_id": _instance_id.get(),
    }


def clear_log_context() -> None:
    _cycle_id.set("")
    _stage_name.set("")
    _worker_id.set("")
    _interface.set("")
    _message_id.set("")
    _instance_id.set("")
