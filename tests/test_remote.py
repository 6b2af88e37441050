import threading
import time
from unittest.mock import MagicMock

import pytest
from socketio import exceptions as socketio_exceptions

from artscore.errors import TransportError, ValidationError
from artscore.remote import RemoteStore
from artscore.sync import SyncClient


@pytest.fixture
def sio():
    client = MagicMock()
    client.connected = True
    client.call.return_value = {'ok': True}
    return client


@pytest.fixture
def remote(sio):
    store = RemoteStore("http://scoring.test", client=sio, backoff_ms=[1], timeout_seconds=0.1)
    yield store
    store.close()


def wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.01)
    return condition()


def payload(version, tree=None, epoch="e1"):
    return {'epoch': epoch, 'version': version, 'tree': tree or {}}


class TestSnapshots:
    def test_registers_snapshot_handler(self, sio, remote):
        sio.on.assert_called_once_with('snapshot', remote._on_snapshot)

    def test_subscribe_connects_when_nothing_received(self, sio):
        sio.connected = False
        store = RemoteStore("http://scoring.test", client=sio)
        store.subscribe(lambda snapshot: None)
        sio.connect.assert_called_once_with("http://scoring.test", wait_timeout=5.0)
        store.close()

    def test_connection_failure(self, sio):
        sio.connected = False
        sio.connect.side_effect = socketio_exceptions.ConnectionError("refused")
        store = RemoteStore("http://scoring.test", client=sio)
        with pytest.raises(TransportError) as excinfo:
            store.connect()
        assert excinfo.value.retryable
        store.close()

    def test_unreachable_server_does_not_break_start(self, sio):
        sio.connected = False
        sio.connect.side_effect = [socketio_exceptions.ConnectionError("refused"), None]
        errors = []
        store = RemoteStore("http://scoring.test", client=sio, backoff_ms=[1],
                            on_write_error=lambda *args: errors.append(args))
        client = SyncClient(store).start()
        assert client.started
        assert client.data.performances == []
        assert errors[0][:2] == ('connect', "http://scoring.test")
        assert errors[0][2].retryable
        assert wait_for(lambda: sio.connect.call_count == 2)
        store.close()

    def test_late_subscriber_gets_latest(self, remote):
        remote._on_snapshot(payload(3, {'settings': {'maxScore': 20}}))
        seen = []
        remote.subscribe(seen.append)
        assert [s.version for s in seen] == [3]

    def test_stale_snapshots_dropped(self, remote):
        seen = []
        remote._on_snapshot(payload(1))
        remote.subscribe(seen.append)
        remote._on_snapshot(payload(3))
        remote._on_snapshot(payload(2))
        remote._on_snapshot(payload(1, epoch="e2"))
        assert [(s.epoch, s.version) for s in seen] == [("e1", 1), ("e1", 3), ("e2", 1)]
        assert remote.latest.epoch == "e2"

    def test_malformed_snapshot_ignored(self, remote):
        remote._on_snapshot("nonsense")
        assert remote.latest is None

    def test_sync_client_view(self, remote):
        client = SyncClient(remote)
        remote._on_snapshot(payload(1))
        client.start()
        remote._on_snapshot(payload(2, {'performances': {'p1': {'name': 'Dance', 'order': 1}}}))
        assert [p.name for p in client.data.performances] == ["Dance"]


class TestWrites:
    def test_write_sends_event(self, sio, remote):
        assert remote.write_path("/scores/j1_p1/", {'value': 7, 'comment': None}).result(timeout=5) is None
        sio.call.assert_called_once_with(
            'write', {'path': 'scores/j1_p1', 'value': {'value': 7}}, timeout=0.1
        )

    def test_patch_and_delete(self, sio, remote):
        remote.patch_path("judges/j1", {'name': 'Ana'}).result(timeout=5)
        remote.delete_path("judges/j1").result(timeout=5)
        assert [c.args for c in sio.call.call_args_list] == [
            ('patch', {'path': 'judges/j1', 'fields': {'name': 'Ana'}}),
            ('delete', {'path': 'judges/j1'}),
        ]

    def test_invalid_path_rejected_before_sending(self, sio, remote):
        with pytest.raises(ValidationError):
            remote.write_path("scores//x", 1)
        sio.call.assert_not_called()

    def test_retries_then_succeeds(self, sio, remote):
        sio.call.side_effect = [socketio_exceptions.TimeoutError(), {'ok': True}]
        remote.write_path("settings/maxScore", 20).result(timeout=5)
        assert sio.call.call_count == 2

    def test_gives_up_after_bounded_retries(self, sio):
        failed = threading.Event()
        reports = []

        def on_write_error(event, path, exc):
            reports.append((event, path, exc.retryable))
            failed.set()

        sio.call.side_effect = socketio_exceptions.TimeoutError()
        store = RemoteStore("http://scoring.test", client=sio, max_retries=2, backoff_ms=[1],
                            on_write_error=on_write_error)
        future = store.write_path("settings/maxScore", 20)
        assert isinstance(future.exception(timeout=5), TransportError)
        assert failed.wait(timeout=5)
        assert reports == [('write', 'settings/maxScore', True)]
        assert sio.call.call_count == 3
        store.close()

    def test_rejection_is_not_retried(self, sio, remote):
        sio.call.return_value = {'ok': False, 'error': "Invalid store path"}
        exc = remote.delete_path("settings").exception(timeout=5)
        assert isinstance(exc, TransportError)
        assert not exc.retryable
        assert str(exc) == "Invalid store path"
        assert sio.call.call_count == 1
