"""tests for hash-based incremental sync."""

import asyncio

import pytest

from thinkflow.core.graph import GraphStore
from thinkflow.core.models import Position
from thinkflow.core.storage import EDGES_TABLE, NODES_TABLE, InMemoryStore, LocalCache
from thinkflow.core.sync import (
    SyncReconciler,
    edge_from_row,
    edge_hash,
    edge_to_row,
    node_from_row,
    node_hash,
    node_to_row,
)


PROJECT = "proj-1"


@pytest.fixture
def remote():
    return InMemoryStore()


@pytest.fixture
def reconciler(store, remote, temp_dir):
    sync = SyncReconciler(store, local=LocalCache(temp_dir), remote=remote, project_id=PROJECT, debounce_seconds=60)
    store.subscribe(sync.on_graph_event)
    return sync


class TestHashing:
    """only persisted fields count."""

    def test_ui_flags_ignored(self, store, ids):
        node = store.nodes[ids["soil"]]
        before = node_hash(node)
        node.selected = True
        node.faded = True
        node.hidden = True
        node.error = "oops"
        node.is_detail_expanded = True
        assert node_hash(node) == before

    def test_persisted_fields_count(self, store, ids):
        node = store.nodes[ids["soil"]]
        before = node_hash(node)
        node.position = node.position.moved(1, 0)
        assert node_hash(node) != before

    def test_edge_emphasis_ignored(self, store):
        edge = next(iter(store.edges.values()))
        before = edge_hash(edge)
        edge.style.stroke = "#000"
        edge.style.stroke_width = 3.0
        edge.style.animated = True
        assert edge_hash(edge) == before

    def test_row_roundtrip_keeps_hash(self, store, ids):
        """a node written and read back hashes the same (busy aside)."""
        node = store.nodes[ids["soil"]]
        node.long_form_content = "deep"
        node.derived_questions = ["q1"]
        node.width = 320.0
        assert node_hash(node_from_row(node_to_row(node, PROJECT))) == node_hash(node)
        edge = next(iter(store.edges.values()))
        assert edge_hash(edge_from_row(edge_to_row(edge, PROJECT))) == edge_hash(edge)

    def test_row_load_clears_busy(self, store, ids):
        node = store.nodes[ids["soil"]]
        node.is_busy = True
        assert not node_from_row(node_to_row(node, PROJECT)).is_busy


class TestDetectChanges:
    def test_everything_dirty_first_time(self, store, reconciler):
        reconciler.detect_changes(list(store.nodes.values()), list(store.edges.values()))
        assert reconciler.dirty_nodes == set(store.nodes)
        assert reconciler.dirty_edges == set(store.edges)

    def test_clean_after_seed(self, store, reconciler):
        nodes, edges = list(store.nodes.values()), list(store.edges.values())
        reconciler.seed_snapshot(nodes, edges)
        reconciler.detect_changes(nodes, edges)
        assert reconciler.pending_changes() == {"dirty_nodes": 0, "dirty_edges": 0, "deleted_nodes": 0, "deleted_edges": 0}

    def test_deletions_detected(self, store, ids, reconciler):
        reconciler.seed_snapshot(list(store.nodes.values()), list(store.edges.values()))
        store.delete_subtree(ids["soil"])
        reconciler.detect_changes(list(store.nodes.values()), list(store.edges.values()))
        assert reconciler.deleted_nodes == {ids["soil"], ids["compost"]}
        assert len(reconciler.deleted_edges) == 2
        assert reconciler.dirty_nodes == set()


class TestCloudSave:
    """upserts only what changed."""

    @pytest.mark.asyncio
    async def test_full_save_then_skip(self, store, remote, reconciler):
        """a second save with no changes makes zero remote calls."""
        assert await reconciler.save_now()
        assert len(remote.tables[NODES_TABLE]) == 4
        assert len(remote.tables[EDGES_TABLE]) == 3
        assert reconciler.last_sync_time is not None

        remote.calls.clear()
        assert await reconciler.save_now()
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_only_dirty_upserted(self, store, ids, remote, reconciler):
        await reconciler.save_now()
        store.update_node(ids["water"], label="watering")
        store.update_node(ids["soil"], selected=True)  # ui-only change
        remote.calls.clear()
        upserted = []
        original = remote.upsert

        async def spy(table, rows, on_conflict):
            upserted.extend(r.get("node_id") for r in rows)
            await original(table, rows, on_conflict)

        remote.upsert = spy
        await reconciler.save_now()
        assert upserted == [ids["water"]]
        row = next(r for r in remote.tables[NODES_TABLE] if r["node_id"] == ids["water"])
        assert row["title"] == "watering"

    @pytest.mark.asyncio
    async def test_deletions_synced(self, store, ids, remote, reconciler):
        await reconciler.save_now()
        store.delete_subtree(ids["soil"])
        await reconciler.save_now()
        assert {r["node_id"] for r in remote.tables[NODES_TABLE]} == {ids["build a garden"], ids["water"]}
        assert len(remote.tables[EDGES_TABLE]) == 1
        assert reconciler.deleted_nodes == set()

    @pytest.mark.asyncio
    async def test_failure_keeps_marks(self, store, ids, remote, reconciler):
        """a failed save leaves everything dirty for the next cycle."""
        remote.fail = True
        assert not await reconciler.save_now()
        assert reconciler.sync_error
        assert reconciler.dirty_nodes == set(store.nodes)

        remote.fail = False
        assert await reconciler.save_now()
        assert reconciler.sync_error is None
        assert reconciler.dirty_nodes == set()
        assert len(remote.tables[NODES_TABLE]) == 4

    @pytest.mark.asyncio
    async def test_no_remote(self, store):
        sync = SyncReconciler(store)
        assert not await sync.save_now()

    @pytest.mark.asyncio
    async def test_upsert_on_conflict_key(self, store, ids, remote, reconciler):
        """saving the same node twice updates its row in place."""
        await reconciler.save_now()
        store.update_node(ids["soil"], description="loam")
        await reconciler.save_now()
        rows = [r for r in remote.tables[NODES_TABLE] if r["node_id"] == ids["soil"]]
        assert len(rows) == 1
        assert rows[0]["description"] == "loam"

    @pytest.mark.asyncio
    async def test_unknown_image_kept_remotely(self, store, ids, remote, reconciler):
        """a node whose image was stripped locally never blanks the stored url."""
        store.update_node(ids["soil"], image_url="https://img.test/soil.png")
        await reconciler.save_now()

        store.update_node(ids["soil"], image_url=None, label="dirt")
        reconciler.mark_images_unknown([store.nodes[ids["soil"]]])
        column_sets = []
        original = remote.upsert

        async def spy(table, rows, on_conflict):
            column_sets.append({frozenset(r) for r in rows})
            await original(table, rows, on_conflict)

        remote.upsert = spy
        await reconciler.save_now()
        row = next(r for r in remote.tables[NODES_TABLE] if r["node_id"] == ids["soil"])
        assert row["title"] == "dirt"
        assert row["image_url"] == "https://img.test/soil.png"
        # one column set per request
        assert all(len(columns) == 1 for columns in column_sets)

    @pytest.mark.asyncio
    async def test_new_image_pushed_despite_unknown(self, store, ids, remote, reconciler):
        reconciler.mark_images_unknown([store.nodes[ids["soil"]]])
        store.update_node(ids["soil"], image_url="https://img.test/new.png")
        await reconciler.save_now()
        row = next(r for r in remote.tables[NODES_TABLE] if r["node_id"] == ids["soil"])
        assert row["image_url"] == "https://img.test/new.png"

    def test_row_without_image(self, store, ids):
        row = node_to_row(store.nodes[ids["soil"]], PROJECT, include_image=False)
        assert "image_url" not in row
        assert row["title"] == "soil"

    @pytest.mark.asyncio
    async def test_edge_save_clears_old_error(self, store, reconciler):
        reconciler.detect_changes(list(store.nodes.values()), list(store.edges.values()))
        reconciler.sync_error = "earlier failure"
        assert await reconciler.save_edges_to_cloud(list(store.edges.values()))
        assert reconciler.sync_error is None
        assert not reconciler.is_syncing
        assert reconciler.last_sync_time is not None
        assert reconciler.dirty_edges == set()


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_resets_busy_and_seeds(self, store, ids, remote, reconciler):
        store.update_node(ids["soil"], is_busy=True)
        await reconciler.save_now()

        fresh = GraphStore()
        other = SyncReconciler(fresh, remote=remote)
        nodes, edges = await other.load_from_cloud(PROJECT)
        assert len(nodes) == 4
        assert len(edges) == 3
        assert not any(n.is_busy for n in nodes)
        assert other.project_id == PROJECT

        fresh.replace_all(nodes, edges)
        remote.calls.clear()
        assert await other.save_now()
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_load_failure(self, remote):
        remote.fail = True
        sync = SyncReconciler(GraphStore(), remote=remote)
        assert await sync.load_from_cloud(PROJECT) is None
        assert sync.sync_error


class TestScheduling:
    """debounced and immediate saves share one dirty set."""

    @pytest.mark.asyncio
    async def test_debounce_coalesces(self, store, ids, remote):
        sync = SyncReconciler(store, remote=remote, project_id=PROJECT, debounce_seconds=0.01)
        store.subscribe(sync.on_graph_event)
        for i in range(5):
            store.move_node(ids["water"], Position(i, i))
        await asyncio.sleep(0.05)
        upserts = [c for c in remote.calls if c == ("upsert", NODES_TABLE)]
        assert len(upserts) == 1
        row = next(r for r in remote.tables[NODES_TABLE] if r["node_id"] == ids["water"])
        assert row["position"] == {"x": 4.0, "y": 4.0}

    @pytest.mark.asyncio
    async def test_critical_saves_immediately(self, store, ids, remote, temp_dir):
        sync = SyncReconciler(store, remote=remote, project_id=PROJECT, debounce_seconds=60)
        store.subscribe(sync.on_graph_event)
        store.update_node(ids["soil"], image_url="https://img.test/x.png", critical=True)
        await asyncio.sleep(0.01)
        assert any(r.get("image_url") for r in remote.tables[NODES_TABLE])
        await sync.flush()

    @pytest.mark.asyncio
    async def test_flush_cancels_timer(self, store, ids, remote, temp_dir):
        sync = SyncReconciler(store, remote=remote, project_id=PROJECT, debounce_seconds=60)
        store.subscribe(sync.on_graph_event)
        store.update_node(ids["soil"], label="dirt")
        assert await sync.flush()
        assert sync._timer is None
        assert any(r["title"] == "dirt" for r in remote.tables[NODES_TABLE])

    def test_local_written_on_mutation(self, store, ids, reconciler, temp_dir):
        """every mutation refreshes the local cache, images stripped."""
        store.update_node(ids["soil"], image_url="https://img.test/y.png")
        nodes, edges, collapsed = LocalCache(temp_dir).load(PROJECT)
        assert {n.id for n in nodes} == set(store.nodes)
        assert all(n.image_url is None for n in nodes)

    def test_reset_sync_state(self, store, reconciler):
        reconciler.detect_changes(list(store.nodes.values()), list(store.edges.values()))
        reconciler.mark_images_unknown(list(store.nodes.values()))
        reconciler.reset_sync_state()
        assert reconciler.pending_changes()["dirty_nodes"] == 0
        assert reconciler.unknown_images == set()

    @pytest.mark.asyncio
    async def test_paused_schedules_nothing(self, store, ids, reconciler):
        reconciler.paused = True
        store.update_node(ids["soil"], label="dirt", critical=True)
        assert reconciler._timer is None
        assert not reconciler._immediate
