import pytest
from flask import Flask

from artscore.errors import ValidationError
from artscore.models import StoreNode, db
from artscore.store import MemoryStore, Snapshot, SqlStore, SubscriberHub, split_path


class Recorder:
    def __init__(self):
        self.snapshots = []

    def __call__(self, snapshot):
        self.snapshots.append(snapshot)

    @property
    def last(self):
        return self.snapshots[-1]

    @property
    def versions(self):
        return [s.version for s in self.snapshots]


class TestSplitPath:
    def test_strips_surrounding_slashes(self):
        assert split_path("/scores/j1_p1/") == ["scores", "j1_p1"]

    def test_accepts_segment_lists(self):
        assert split_path(["settings", "maxScore"]) == ["settings", "maxScore"]

    @pytest.mark.parametrize("path", ["", "/", "scores//j1", "a/ /b", None, 42])
    def test_rejects_bad_paths(self, path):
        with pytest.raises(ValidationError):
            split_path(path)


class TestSubscriptions:
    def test_subscriber_receives_current_tree_immediately(self):
        store = MemoryStore({'settings': {'maxScore': 20}})
        recorder = Recorder()
        store.subscribe(recorder)
        assert recorder.versions == [0]
        assert recorder.last.tree == {'settings': {'maxScore': 20}}

    def test_writer_receives_its_own_write(self):
        store = MemoryStore()
        writer, other = Recorder(), Recorder()
        store.subscribe(writer)
        store.subscribe(other)
        store.write_path("performances/p1", {'id': 'p1', 'name': 'Dance'})
        for recorder in (writer, other):
            assert recorder.versions == [0, 1]
            assert recorder.last.tree == {'performances': {'p1': {'id': 'p1', 'name': 'Dance'}}}

    def test_unsubscribe_stops_delivery(self):
        store = MemoryStore()
        recorder = Recorder()
        unsubscribe = store.subscribe(recorder)
        unsubscribe()
        store.write_path("settings/maxScore", 5)
        assert recorder.versions == [0]

    def test_failing_subscriber_does_not_block_others(self):
        store = MemoryStore()
        recorder = Recorder()

        def broken(snapshot):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(recorder)
        store.write_path("settings/maxScore", 5)
        assert recorder.versions == [0, 1]

    def test_callback_may_write_to_the_store(self):
        store = MemoryStore()
        recorder = Recorder()

        def mirror(snapshot):
            settings = snapshot.tree.get('settings', {})
            if 'maxScore' in settings and 'copy' not in settings:
                store.write_path("settings/copy", settings['maxScore'])

        store.subscribe(mirror)
        store.subscribe(recorder)
        store.write_path("settings/maxScore", 5)
        assert recorder.last.tree == {'settings': {'maxScore': 5, 'copy': 5}}
        assert recorder.versions == sorted(recorder.versions)

    def test_delivered_tree_is_a_copy(self):
        store = MemoryStore()
        recorder = Recorder()
        store.subscribe(recorder)
        store.write_path("judges/j1", {'name': 'Ana'})
        recorder.last.tree['judges']['j1']['name'] = 'changed'
        assert store.snapshot().tree['judges']['j1']['name'] == 'Ana'


class TestMonotonicDelivery:
    def test_older_snapshot_is_dropped(self):
        hub = SubscriberHub()
        recorder = Recorder()
        hub.add(recorder)
        hub.publish(Snapshot('e1', 2, {'v': 2}))
        hub.publish(Snapshot('e1', 1, {'v': 1}))
        hub.publish(Snapshot('e1', 2, {'v': 2}))
        assert recorder.versions == [2]

    def test_new_epoch_is_accepted(self):
        hub = SubscriberHub()
        recorder = Recorder()
        hub.add(recorder)
        hub.publish(Snapshot('e1', 7))
        hub.publish(Snapshot('e2', 1))
        assert [(s.epoch, s.version) for s in recorder.snapshots] == [('e1', 7), ('e2', 1)]

    def test_hub_counts_subscribers(self):
        hub = SubscriberHub()
        _, unsubscribe = hub.add(Recorder())
        hub.add(Recorder())
        assert len(hub) == 2
        unsubscribe()
        assert len(hub) == 1

    def test_payload_round_trip(self):
        snapshot = Snapshot('e1', 3, {'settings': {'maxScore': 10}})
        assert Snapshot.from_payload(snapshot.to_payload()) == snapshot

    def test_malformed_payload(self):
        with pytest.raises(ValidationError):
            Snapshot.from_payload({'version': 'three'})
        with pytest.raises(ValidationError):
            Snapshot.from_payload(None)


class StoreContract:
    """Behaviour every backend shares. Subclasses provide ``store``."""

    def test_write_then_read(self, store):
        store.write_path("scores/j1_p1", {'judgeId': 'j1', 'performanceId': 'p1', 'value': 7})
        assert store.snapshot().tree == {
            'scores': {'j1_p1': {'judgeId': 'j1', 'performanceId': 'p1', 'value': 7}}
        }

    def test_overwrite_replaces_whole_value(self, store):
        store.write_path("scores/j1_p1", {'value': 7, 'comment': 'ok'})
        store.write_path("scores/j1_p1", {'value': 9})
        assert store.snapshot().tree['scores']['j1_p1'] == {'value': 9}

    def test_write_none_deletes(self, store):
        store.write_path("settings/activePerformanceId", "p1")
        store.write_path("settings/maxScore", 10)
        store.write_path("settings/activePerformanceId", None)
        assert store.snapshot().tree == {'settings': {'maxScore': 10}}

    def test_write_empty_mapping_deletes(self, store):
        store.write_path("judges/j1", {'name': 'Ana'})
        store.write_path("judges/j1", {})
        assert store.snapshot().tree == {}

    def test_patch_merges_fields_in_one_version(self, store):
        store.write_path("performances/p1", {'name': 'Dance', 'order': 1, 'performer': 'A'})
        version = store.version
        store.patch_path("performances/p1", {'name': 'Ballet', 'performer': None})
        assert store.version == version + 1
        assert store.snapshot().tree['performances']['p1'] == {'name': 'Ballet', 'order': 1}

    def test_patch_requires_mapping(self, store):
        with pytest.raises(ValidationError):
            store.patch_path("performances/p1", ['name'])
        assert store.version == 0

    def test_delete_removes_subtree_only(self, store):
        store.write_path("scores/j1_p1", {'value': 7})
        store.write_path("scores/j1_p2", {'value': 8})
        store.delete_path("scores/j1_p1")
        assert store.snapshot().tree == {'scores': {'j1_p2': {'value': 8}}}

    def test_every_mutation_bumps_version(self, store):
        recorder = Recorder()
        store.subscribe(recorder)
        store.write_path("settings/maxScore", 10)
        store.patch_path("settings", {'maxScore': 20})
        store.delete_path("settings")
        assert recorder.versions == [0, 1, 2, 3]
        assert recorder.last.tree == {}

    def test_invalid_path_changes_nothing(self, store):
        with pytest.raises(ValidationError):
            store.write_path("scores//x", 1)
        assert store.version == 0


class TestMemoryStore(StoreContract):
    @pytest.fixture
    def store(self):
        return MemoryStore()

    def test_delete_prunes_empty_parents(self, store):
        store.write_path("a/b/c", 1)
        store.delete_path("a/b/c")
        assert store.snapshot().tree == {}


class TestSqlStore(StoreContract):
    @pytest.fixture
    def app(self):
        app = Flask(__name__)
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
        db.init_app(app)
        with app.app_context():
            db.create_all()
        yield app
        with app.app_context():
            db.drop_all()

    @pytest.fixture
    def store(self, app):
        return SqlStore(app)

    def test_one_row_per_leaf(self, app, store):
        store.write_path("performances/p1", {'name': 'Dance', 'order': 1})
        with app.app_context():
            paths = sorted(node.path for node in StoreNode.query.all())
        assert paths == ["performances/p1/name", "performances/p1/order"]

    def test_delete_does_not_treat_underscore_as_wildcard(self, store):
        store.write_path("scores/j1_p1", {'value': 7})
        store.write_path("scores/j1xp1", {'value': 8})
        store.delete_path("scores/j1_p1")
        assert store.snapshot().tree == {'scores': {'j1xp1': {'value': 8}}}

    def test_branch_replaces_leaf(self, store):
        store.write_path("settings", 5)
        store.write_path("settings/maxScore", 10)
        assert store.snapshot().tree == {'settings': {'maxScore': 10}}

    def test_tree_survives_a_new_store_instance(self, app, store):
        store.write_path("judges/j1", {'name': 'Ana', 'accessCode': '4821'})
        reopened = SqlStore(app)
        assert reopened.epoch != store.epoch
        assert reopened.snapshot().tree == {'judges': {'j1': {'name': 'Ana', 'accessCode': '4821'}}}
