"""
Tests for acmeclient/http_challenge.py — the responder runs on an ephemeral
port and is queried with plain requests (no mocking).
"""
from __future__ import annotations

import pytest
import requests

from acmeclient.http_challenge import ChallengeResponder
from errors import StorageUnavailable
from storage.filesystem import FileStore
from storage.memory import MemoryStore


class _BrokenStore(MemoryStore):
    def get(self, key: str):
        raise StorageUnavailable(key, "backend offline")


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def base_url(store):
    with ChallengeResponder(store, host="127.0.0.1", port=0) as responder:
        host, port = responder.address
        yield f"http://{host}:{port}"


def test_serves_published_token(store, base_url):
    store.set("tok123", b"tok123.thumbprint")
    resp = requests.get(f"{base_url}/.well-known/acme-challenge/tok123", timeout=5)
    assert resp.status_code == 200
    assert resp.text == "tok123.thumbprint"
    assert resp.headers["Content-Type"] == "text/plain"


def test_unknown_token_is_404(base_url):
    resp = requests.get(f"{base_url}/.well-known/acme-challenge/missing", timeout=5)
    assert resp.status_code == 404


def test_removed_token_is_404(store, base_url):
    store.set("tok123", b"ka")
    store.delete("tok123")
    resp = requests.get(f"{base_url}/.well-known/acme-challenge/tok123", timeout=5)
    assert resp.status_code == 404


@pytest.mark.parametrize("path", ["/", "/index.html", "/.well-known/acme-challenge/", "/.well-known/acme-challenge/a/b"])
def test_other_paths_are_404(base_url, path):
    assert requests.get(base_url + path, timeout=5).status_code == 404


def test_store_outage_is_503():
    with ChallengeResponder(_BrokenStore(), host="127.0.0.1", port=0) as responder:
        host, port = responder.address
        resp = requests.get(f"http://{host}:{port}/.well-known/acme-challenge/tok", timeout=5)
    assert resp.status_code == 503


def test_reads_through_a_file_store(tmp_path):
    store = FileStore(tmp_path)
    with ChallengeResponder(store, host="127.0.0.1", port=0) as responder:
        host, port = responder.address
        url = f"http://{host}:{port}/.well-known/acme-challenge/"
        # written after the server started
        store.set("tok-file", b"tok-file.tp")
        assert requests.get(url + "tok-file", timeout=5).text == "tok-file.tp"
        # the store rejects this key; the responder answers 404
        assert requests.get(url + "..%2Fsite", timeout=5).status_code == 404


def test_start_twice_raises(store):
    responder = ChallengeResponder(store, host="127.0.0.1", port=0)
    responder.start()
    try:
        with pytest.raises(RuntimeError):
            responder.start()
    finally:
        responder.stop()
    with pytest.raises(RuntimeError):
        _ = responder.address
