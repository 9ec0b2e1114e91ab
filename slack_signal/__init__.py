from importlib import import_module
from typing import Any

_EXPORTS: dict[str, tuple[str, str]] = {
    "SignalBridge": (".bridge.core", "SignalBridge"),
    "BridgeRunner": (".app.main", "BridgeRunner"),
    "MessageStore": (".bridge.store", "MessageStore"),
    "Config": (".shared.config", "Config"),
    "ConfigKeys": (".shared.config_keys", "ConfigKeys"),
    "EventBus": (".events.bus", "EventBus"),
    "EventKind": (".events.models", "EventKind"),
    "MessageReceived": (".events.models", "MessageReceived"),
    "ReadMarked": (".events.models", "ReadMarked"),
    "parse_envelope": (".clients.slack.envelope", "parse_envelope"),
    "Deduplicator": (".clients.slack.dedup", "Deduplicator"),
    "SlackListener": (".clients.slack.listener", "SlackListener"),
    "DeviceBroadcaster": (".clients.device.broadcaster", "DeviceBroadcaster"),
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    try:
        module_name, attr_name = _EXPORTS[name]
    except KeyError:
        raise AttributeError(name) from None
    value = getattr(import_module(module_name, __name__), attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(_EXPORTS))
