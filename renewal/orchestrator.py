"""
Renewal Orchestrator — the scheduling loop.

  Stopped → Running → (tick)* → Stopped

start():  on_start hooks → load the stored certificate into the cache
          (synchronously) → background thread ticks now and then every
          tick_interval seconds (a schedule.Scheduler drives the cadence).
tick():   policy says not-due → nothing.  Due → one AcmeSession; success
          persists + publishes + on_renewal_succeeded, failure reports via
          on_exception and leaves the cache alone.  A tick that finds a
          session in flight is skipped, never queued.
stop():   sets the stop event (in-flight polls abort promptly), joins the
          thread, then on_stop hooks.

Nothing raised inside a tick escapes it: the next tick simply tries again.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

import schedule

from acmeclient.client import AcmeClient
from acmeclient.session import AcmeSession
from config import RenewalOptions, Settings
from errors import DownloadFailed, EngineError, StorageUnavailable
from renewal import policy
from renewal.cache import ActiveCertificate, CertificateCache, CertificateMetadata
from renewal.hooks import HookDispatcher, RenewalHook
from storage.base import SITE_KEY, KeyValueStore
from storage.filesystem import FileStore
from storage.memory import MemoryStore

logger = logging.getLogger(__name__)


class Session(Protocol):
    def run(self) -> bytes: ...


class TickOutcome(str, enum.Enum):
    RENEWED = "renewed"
    NOT_DUE = "not-due"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RenewalState:
    """In-memory bookkeeping; rebuilt from the stored certificate on restart."""

    last_evaluated: Optional[datetime] = None
    last_outcome: Optional[TickOutcome] = None
    last_error: Optional[Exception] = None
    attempts: int = 0


class RenewalOrchestrator:
    def __init__(
        self,
        options: RenewalOptions,
        cert_store: KeyValueStore,
        challenge_store: KeyValueStore,
        cache: CertificateCache | None = None,
        hooks: HookDispatcher | list[RenewalHook] | None = None,
        session_factory: Callable[[], Session] | None = None,
        tick_interval: float = 3600,
        poll_interval: float = 2.0,
        authz_timeout: float = 120.0,
        order_timeout: float = 120.0,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.options = options
        self.cert_store = cert_store
        self.challenge_store = challenge_store
        self.cache = cache or CertificateCache()
        self.hooks = hooks if isinstance(hooks, HookDispatcher) else HookDispatcher(hooks or ())
        self.tick_interval = tick_interval
        self.poll_interval = poll_interval
        self.authz_timeout = authz_timeout
        self.order_timeout = order_timeout
        self.ca_bundle = ca_bundle
        self.insecure = insecure
        self._session_factory = session_factory or self._new_session

        self._state = RenewalState()
        self._stop_event = threading.Event()
        self._session_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._scheduler: Optional[schedule.Scheduler] = None
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(
        cls,
        s: Settings,
        options: RenewalOptions,
        hooks: list[RenewalHook] | None = None,
    ) -> "RenewalOrchestrator":
        cert_store, challenge_store = build_stores(s)
        return cls(
            options=options,
            cert_store=cert_store,
            challenge_store=challenge_store,
            hooks=hooks,
            tick_interval=s.TICK_INTERVAL_SECONDS,
            poll_interval=s.AUTHZ_POLL_INTERVAL,
            authz_timeout=s.AUTHZ_POLL_TIMEOUT,
            order_timeout=s.ORDER_POLL_TIMEOUT,
            ca_bundle=s.ACME_CA_BUNDLE,
            insecure=s.ACME_INSECURE,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> RenewalState:
        """Snapshot of the bookkeeping (a copy; mutating it has no effect)."""
        return dataclasses.replace(self._state)

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._thread is not None:
                raise RuntimeError("orchestrator already started")
            # one event per run: a loop left behind by a timed-out stop() never restarts
            self._stop_event = threading.Event()
            self.hooks.on_start()
            self.load_current()

            self._scheduler = schedule.Scheduler()
            self._scheduler.every(self.tick_interval).seconds.do(self.tick)
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(self._scheduler, self._stop_event),
                name="renewal-orchestrator",
                daemon=True,
            )
            self._thread.start()
            logger.info(
                "Renewal orchestrator running for %s (tick every %ss)",
                ", ".join(self.options.domains), self.tick_interval,
            )

    def stop(self, timeout: float | None = None) -> None:
        with self._lifecycle_lock:
            if self._thread is None:
                return
            self._stop_event.set()
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(
                    "Renewal thread did not finish within %ss; it exits once its session returns",
                    timeout,
                )
            self._thread = None
            if self._scheduler is not None:
                self._scheduler.clear()
                self._scheduler = None
            self.hooks.on_stop()
            logger.info("Renewal orchestrator stopped")

    def _run_loop(self, scheduler: schedule.Scheduler, stop_event: threading.Event) -> None:
        self.tick()
        while not stop_event.is_set():
            scheduler.run_pending()
            idle = scheduler.idle_seconds
            stop_event.wait(max(idle if idle is not None else self.tick_interval, 0.0))

    # ── Certificate loading ───────────────────────────────────────────────

    def load_current(self) -> Optional[ActiveCertificate]:
        """Publish the stored certificate, if any, into the cache."""
        try:
            handle = self._read_stored()
        except StorageUnavailable as exc:
            logger.error("Could not load stored certificate: %s", exc)
            self.hooks.on_exception(exc)
            return None
        if handle is None:
            logger.info("No usable stored certificate — handshakes fail until first issuance")
            return None
        self.cache.publish(handle)
        return handle

    def _read_stored(self) -> Optional[ActiveCertificate]:
        data = self.cert_store.get(SITE_KEY)
        if data is None:
            return None
        try:
            return ActiveCertificate.from_pfx(data, self.options.pfx_password)
        except ValueError as exc:
            logger.warning("Stored certificate is unreadable, treating as absent: %s", exc)
            return None

    def _current_metadata(self) -> Optional[CertificateMetadata]:
        handle = self.cache.current()
        if handle is None:
            handle = self._read_stored()
            if handle is not None:
                self.cache.publish(handle)
        return handle.metadata if handle is not None else None

    # ── Tick ──────────────────────────────────────────────────────────────

    def tick(self) -> TickOutcome:
        if not self._session_lock.acquire(blocking=False):
            logger.info("Renewal session already in flight — skipping tick")
            return TickOutcome.SKIPPED
        try:
            return self._tick()
        finally:
            self._session_lock.release()

    def _tick(self) -> TickOutcome:
        now = datetime.now(tz=timezone.utc)
        self._state.last_evaluated = now
        try:
            metadata = self._current_metadata()
            if metadata is not None and set(metadata.domains) != set(self.options.domains):
                logger.warning(
                    "Stored certificate covers %s but configured domains are %s; it is not replaced until it is due",
                    ", ".join(metadata.domains), ", ".join(self.options.domains),
                )
            decision = policy.evaluate(metadata, self.options, now)
            if decision is policy.Decision.NOT_DUE:
                logger.debug("Certificate for %s not due for renewal", ", ".join(self.options.domains))
                self._state.last_outcome = TickOutcome.NOT_DUE
                return TickOutcome.NOT_DUE

            logger.info(
                "Renewal due for %s (previous failed attempts: %d)",
                ", ".join(self.options.domains), self._state.attempts,
            )
            bundle = self._session_factory().run()
            try:
                handle = ActiveCertificate.from_pfx(bundle, self.options.pfx_password)
            except ValueError as exc:
                raise DownloadFailed(f"issued bundle is unreadable: {exc}") from exc
            self.cert_store.set(SITE_KEY, bundle)
            self.cache.publish(handle)
        except Exception as exc:
            self._state.attempts += 1
            self._state.last_outcome = TickOutcome.FAILED
            self._state.last_error = exc
            if isinstance(exc, EngineError):
                logger.error(
                    "Renewal attempt %d failed: %s: %s", self._state.attempts, type(exc).__name__, exc
                )
            else:
                logger.exception("Renewal attempt %d crashed", self._state.attempts)
            self.hooks.on_exception(exc)
            return TickOutcome.FAILED

        self._state.attempts = 0
        self._state.last_outcome = TickOutcome.RENEWED
        self._state.last_error = None
        self.hooks.on_renewal_succeeded(handle)
        return TickOutcome.RENEWED

    def _new_session(self) -> AcmeSession:
        return AcmeSession(
            options=self.options,
            client=AcmeClient(
                self.options.acme_directory, ca_bundle=self.ca_bundle, insecure=self.insecure
            ),
            cert_store=self.cert_store,
            challenge_store=self.challenge_store,
            stop_event=self._stop_event,
            poll_interval=self.poll_interval,
            authz_timeout=self.authz_timeout,
            order_timeout=self.order_timeout,
        )


def build_stores(s: Settings) -> tuple[KeyValueStore, KeyValueStore]:
    """(certificate store, challenge store) for the configured backend."""
    if s.STORE_BACKEND == "memory":
        return MemoryStore(), MemoryStore(ttl=s.CHALLENGE_TTL_SECONDS)
    cert_store = FileStore(s.CERT_STORE_PATH)
    if s.CHALLENGE_STORE_PATH:
        return cert_store, FileStore(s.CHALLENGE_STORE_PATH, ttl=s.CHALLENGE_TTL_SECONDS)
    return cert_store, MemoryStore(ttl=s.CHALLENGE_TTL_SECONDS)
