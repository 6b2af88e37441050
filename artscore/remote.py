"""Store client talking to the scoring server over Socket.IO.

Writes are handed to a single background worker so callers never wait on
the network, and go out in the order they were made. A write that keeps
failing is retried a bounded number of times; after that the failure is
reported through the returned future and ``on_write_error``.

If the server cannot be reached when the first subscriber arrives, the
failure is reported the same way and connecting is retried in the
background; subscribers simply see no tree until it succeeds.
"""

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import socketio
from socketio import exceptions as socketio_exceptions

from .errors import TransportError, ValidationError
from .store import Snapshot, SubscriberHub, join_path, normalize_value, split_path

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = 'http://localhost:5000'


class RemoteStore:
    def __init__(self, url: str, client: socketio.Client | None = None, max_retries: int = 2,
                 backoff_ms: list[int] | None = None, timeout_seconds: float = 5.0,
                 on_write_error: Callable[[str, str, TransportError], None] | None = None):
        self.url = url
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms or [250, 1000]
        self.timeout_seconds = timeout_seconds
        self.on_write_error = on_write_error
        self._sio = client or socketio.Client(reconnection=True)
        self._sio.on('snapshot', self._on_snapshot)
        self._hub = SubscriberHub()
        self._latest: Snapshot | None = None
        self._lock = threading.Lock()
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix='artscore-writer')
        self._closed = threading.Event()
        self._reconnect_thread = None

    @classmethod
    def from_env(cls, **kwargs) -> "RemoteStore":
        return cls(os.getenv('ARTSCORE_SERVER_URL', DEFAULT_SERVER_URL), **kwargs)

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    @property
    def latest(self) -> Snapshot | None:
        return self._latest

    def connect(self) -> None:
        if self._sio.connected:
            return
        try:
            self._sio.connect(self.url, wait_timeout=self.timeout_seconds)
        except socketio_exceptions.ConnectionError as exc:
            raise TransportError(f"Cannot reach scoring server at {self.url}: {exc}", retryable=True) from exc

    def close(self) -> None:
        self._closed.set()
        self._writer.shutdown(wait=True)
        if self._sio.connected:
            self._sio.disconnect()

    def subscribe(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        """Register ``callback``. It fires with the last known tree right away,
        or with the tree the server sends on connect."""
        subscriber, unsubscribe = self._hub.add(callback)
        latest = self._latest
        if latest is not None:
            subscriber.deliver(latest)
        else:
            try:
                self.connect()
            except TransportError as exc:
                # Subscribers keep an empty view until the server is reachable.
                logger.warning(f"Initial connect failed: {exc}. Retrying in the background...")
                self._notify_error('connect', self.url, exc)
                self._start_reconnect()
        return unsubscribe

    def _start_reconnect(self) -> None:
        with self._lock:
            if self._reconnect_thread is not None and self._reconnect_thread.is_alive():
                return
            self._reconnect_thread = threading.Thread(
                target=self._reconnect_loop, name='artscore-reconnect', daemon=True
            )
            self._reconnect_thread.start()

    def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._closed.is_set():
            delay = self.backoff_ms[min(attempt, len(self.backoff_ms) - 1)] / 1000
            if self._closed.wait(delay):
                return
            try:
                self.connect()
            except TransportError as exc:
                attempt += 1
                logger.warning(f"Connect attempt {attempt + 1} failed: {exc}")
                continue
            logger.info("Connected to scoring server at %s", self.url)
            return

    def _on_snapshot(self, payload) -> None:
        try:
            snapshot = Snapshot.from_payload(payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed snapshot: %s", exc)
            return
        with self._lock:
            if not snapshot.is_newer_than(self._latest):
                return
            self._latest = snapshot
        self._hub.publish(snapshot)

    def write_path(self, path, value) -> Future:
        return self._submit('write', path, {'path': join_path(*split_path(path)), 'value': normalize_value(value)})

    def patch_path(self, path, fields) -> Future:
        if not isinstance(fields, dict):
            raise ValidationError("patch_path expects a mapping of fields.")
        payload = {'path': join_path(*split_path(path)), 'fields': {str(k): normalize_value(v) for k, v in fields.items()}}
        return self._submit('patch', path, payload)

    def delete_path(self, path) -> Future:
        return self._submit('delete', path, {'path': join_path(*split_path(path))})

    def _submit(self, event: str, path, payload: dict[str, Any]) -> Future:
        future = self._writer.submit(self._send, event, payload)
        future.add_done_callback(lambda f: self._report(event, str(path), f))
        return future

    def _report(self, event: str, path: str, future: Future) -> None:
        exc = future.exception()
        if exc is None:
            return
        logger.warning("Store %s on %s failed: %s", event, path, exc)
        if isinstance(exc, TransportError):
            self._notify_error(event, path, exc)

    def _notify_error(self, event: str, path: str, exc: TransportError) -> None:
        if self.on_write_error is not None:
            self.on_write_error(event, path, exc)

    def _send(self, event: str, payload: dict[str, Any]) -> None:
        last_error = None
        for attempt in range(self.max_retries + 1):
            try:
                self.connect()
                ack = self._sio.call(event, payload, timeout=self.timeout_seconds)
            except (socketio_exceptions.SocketIOError, TransportError) as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = self.backoff_ms[min(attempt, len(self.backoff_ms) - 1)] / 1000
                    logger.warning(f"Store {event} attempt {attempt + 1} failed: {e}. Retrying in {delay}s...")
                    time.sleep(delay)
                continue

            if isinstance(ack, dict) and ack.get('ok'):
                return
            message = ack.get('error') if isinstance(ack, dict) else None
            raise TransportError(message or f"Server rejected {event}.", retryable=False)

        raise TransportError(
            f"All {self.max_retries + 1} attempts to {event} failed. Last error: {last_error}",
            retryable=True
        )
