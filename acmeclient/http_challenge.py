"""
HTTP-01 challenge responder.

A pure read-through of the challenge store: every request for
``/.well-known/acme-challenge/<token>`` looks the token up and answers

  200 + key authorization (text/plain)   token present
  404                                    token absent / any other path
  503                                    store unreachable

The server keeps no state of its own, so any number of sessions (or another
process sharing a FileStore) can publish tokens while it runs.  Binding port
80 needs root, CAP_NET_BIND_SERVICE or a port forward.
"""
from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

from errors import StorageUnavailable
from storage.base import KeyValueStore

logger = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


class _ChallengeHandler(BaseHTTPRequestHandler):
    server: "_ChallengeServer"

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        token = path[len(CHALLENGE_PATH_PREFIX):] if path.startswith(CHALLENGE_PATH_PREFIX) else ""
        if not token or "/" in token:
            self._reply(404)
            return
        try:
            key_authorization = self.server.store.get(token)
        except ValueError:
            # rejected by the store's key sanitizer
            key_authorization = None
        except StorageUnavailable as exc:
            logger.error("Challenge store unavailable while serving %s: %s", token, exc)
            self._reply(503)
            return
        if key_authorization is None:
            self._reply(404)
            return
        logger.info("Served HTTP-01 token %s to %s", token, self.client_address[0])
        self._reply(200, key_authorization)

    def _reply(self, status: int, body: bytes = b"") -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: object) -> None:
        logger.debug("challenge responder: " + fmt, *args)


class _ChallengeServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], store: KeyValueStore) -> None:
        self.store = store
        super().__init__(address, _ChallengeHandler)


class ChallengeResponder:
    """
    Background HTTP server answering HTTP-01 probes from *store*.

    Usage:
        responder = ChallengeResponder(challenge_store, port=80)
        responder.start()
        ...
        responder.stop()
    """

    def __init__(self, store: KeyValueStore, host: str = "0.0.0.0", port: int = 80) -> None:
        self.store = store
        self.host = host
        self.port = port
        self._server: Optional[_ChallengeServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port); useful when started with port=0."""
        if self._server is None:
            raise RuntimeError("Challenge responder is not running")
        return self._server.server_address[:2]

    def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("Challenge responder is already running")
        self._server = _ChallengeServer((self.host, self.port), self.store)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="challenge-responder", daemon=True
        )
        self._thread.start()
        logger.info("Challenge responder listening on %s:%d", *self.address)

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def __enter__(self) -> "ChallengeResponder":
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()
