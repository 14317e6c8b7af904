"""
Lifecycle hooks and their dispatcher.

Custom hooks inherit from :class:`RenewalHook` and override the events they
care about; unimplemented methods are no-ops.  The dispatcher calls hooks
one after another in registration order and swallows (but logs) anything a
hook raises, so a broken hook can never derail the renewal step that
triggered it.

Usage::

    class NotifyOps(RenewalHook):
        def on_exception(self, error):
            page_oncall(str(error))

    dispatcher = HookDispatcher([NotifyOps()])
"""
from __future__ import annotations

import importlib
import logging
import re
from typing import TYPE_CHECKING, Iterable

from errors import ConfigurationInvalid

if TYPE_CHECKING:
    from renewal.cache import ActiveCertificate

log = logging.getLogger(__name__)

_CLASS_PATH_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)+$")


class RenewalHook:
    """Base class for lifecycle hooks."""

    def on_start(self) -> None:
        """Called once when the orchestrator starts, before the first tick."""

    def on_stop(self) -> None:
        """Called on graceful shutdown.  Not guaranteed on abrupt termination."""

    def on_renewal_succeeded(self, certificate: ActiveCertificate) -> None:
        """Called after a new certificate was persisted and published."""

    def on_exception(self, error: Exception) -> None:
        """Called when a tick fails; the previous certificate stays active."""


class LoggingHook(RenewalHook):
    """Writes every lifecycle event to the log."""

    def on_start(self) -> None:
        log.info("Renewal engine started")

    def on_stop(self) -> None:
        log.info("Renewal engine stopped")

    def on_renewal_succeeded(self, certificate: ActiveCertificate) -> None:
        log.info(
            "Certificate renewed for %s, expires %s",
            ", ".join(certificate.domains),
            certificate.not_after.strftime("%Y-%m-%d"),
        )

    def on_exception(self, error: Exception) -> None:
        log.error("Renewal attempt failed: %s: %s", type(error).__name__, error)


class HookDispatcher:
    """Ordered fan-out to registered hooks with per-call exception isolation."""

    def __init__(self, hooks: Iterable[RenewalHook] = ()) -> None:
        self._hooks: list[RenewalHook] = []
        for hook in hooks:
            self.register(hook)

    def register(self, hook: RenewalHook) -> None:
        if not isinstance(hook, RenewalHook):
            raise TypeError(f"hooks must subclass RenewalHook, got {type(hook).__name__}")
        self._hooks.append(hook)

    @property
    def hooks(self) -> tuple[RenewalHook, ...]:
        return tuple(self._hooks)

    def on_start(self) -> None:
        self._dispatch("on_start")

    def on_stop(self) -> None:
        self._dispatch("on_stop")

    def on_renewal_succeeded(self, certificate: ActiveCertificate) -> None:
        self._dispatch("on_renewal_succeeded", certificate)

    def on_exception(self, error: Exception) -> None:
        self._dispatch("on_exception", error)

    def _dispatch(self, method_name: str, *args: object) -> None:
        for hook in self._hooks:
            try:
                getattr(hook, method_name)(*args)
            except Exception:
                log.exception("Hook %s.%s failed", type(hook).__name__, method_name)


def load_hooks(class_paths: Iterable[str]) -> list[RenewalHook]:
    """
    Import and instantiate hooks from ``package.module.ClassName`` paths.

    Raises ConfigurationInvalid for a malformed path, a missing module or
    class, or a class that is not a RenewalHook: the engine must not start
    with a hook it cannot call.
    """
    hooks: list[RenewalHook] = []
    for class_path in class_paths:
        if not _CLASS_PATH_RE.match(class_path):
            raise ConfigurationInvalid(
                f"Invalid hook class path {class_path!r}: must be 'package.module.ClassName'"
            )
        module_path, _, cls_name = class_path.rpartition(".")
        try:
            cls = getattr(importlib.import_module(module_path), cls_name)
        except (ImportError, AttributeError) as exc:
            raise ConfigurationInvalid(f"Cannot load hook {class_path!r}: {exc}") from exc
        if not (isinstance(cls, type) and issubclass(cls, RenewalHook)):
            raise ConfigurationInvalid(f"Hook {class_path!r} must be a subclass of RenewalHook")
        hooks.append(cls())
        log.info("Loaded hook: %s", class_path)
    return hooks
