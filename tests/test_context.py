"""tests for the application context wiring."""

import pytest

from thinkflow.config import Settings
from thinkflow.context import AppContext, make_client, make_remote
from thinkflow.core.client import ClaudeClient, MockClient, OpenAIClient
from thinkflow.core.models import Edge, Node, NodeKind, Position
from thinkflow.core.storage import EDGES_TABLE, NODES_TABLE, InMemoryStore, PostgrestStore
from thinkflow.core.sync import edge_to_row, node_to_row


class TestFactories:
    def test_clients(self):
        assert isinstance(make_client(Settings(provider="mock")), MockClient)
        assert isinstance(make_client(Settings(provider="claude")), ClaudeClient)
        assert isinstance(make_client(Settings()), OpenAIClient)

    def test_remote(self):
        assert make_remote(Settings()) is None
        assert isinstance(make_remote(Settings(provider="mock")), InMemoryStore)
        assert isinstance(make_remote(Settings(supabase_url="https://db.test", supabase_key="k")), PostgrestStore)

    def test_remote_carries_user(self):
        settings = Settings(supabase_url="https://db.test", supabase_key="k", supabase_user_id="user-1")
        assert make_remote(settings).user_id == "user-1"
        assert make_remote(Settings(supabase_url="https://db.test", supabase_key="k")).user_id is None


class TestSession:
    @pytest.mark.asyncio
    async def test_new_session_and_close(self, ctx):
        await ctx.open_project("p1")
        root_id = await ctx.new_session("grow tomatoes")
        assert ctx.store.nodes[root_id].kind == NodeKind.ROOT
        assert len(ctx.store.children_of(root_id)) == 2
        assert ctx.store.nodes[root_id].child_count == 2

        await ctx.close()
        rows = ctx.remote.tables[NODES_TABLE]
        assert {r["node_id"] for r in rows} == set(ctx.store.nodes)
        assert ctx.sync.pending_changes()["dirty_nodes"] == 0

    @pytest.mark.asyncio
    async def test_selection_drives_active_path(self, ctx):
        await ctx.open_project("p1")
        root_id = await ctx.new_session("grow tomatoes")
        child_id = ctx.store.children_of(root_id)[0]
        ctx.select([child_id])
        assert ctx.path.node_ids == {root_id, child_id}
        other = ctx.store.children_of(root_id)[1]
        assert ctx.store.nodes[other].faded
        await ctx.close()

    @pytest.mark.asyncio
    async def test_toggle_collapse_cached(self, ctx):
        await ctx.open_project("p1")
        root_id = await ctx.new_session("grow tomatoes")
        assert ctx.toggle_collapse(root_id)
        _, _, collapsed = ctx.local.load("p1")
        assert collapsed == [root_id]
        assert all(ctx.store.nodes[c].hidden for c in ctx.store.children_of(root_id))
        await ctx.close()

    def test_edit_rejects_unknown_fields(self, ctx):
        sticky = ctx.add_sticky("note", Position(0, 0))
        with pytest.raises(ValueError):
            ctx.edit_node(sticky.id, is_busy=True)
        ctx.edit_node(sticky.id, label="edited")
        assert ctx.store.nodes[sticky.id].label == "edited"

    def test_drag_through_context(self, ctx):
        root = ctx.store.add_node(Node.create_root("r", position=Position(0, 0)))
        child = ctx.store.add_child(root.id, Node.create_child("c", position=Position(500, 0)))
        ctx.settings.canvas.snap_to_alignment = False
        ctx.settings.canvas.snap_to_grid = False
        ctx.drag_start({"node": {"id": root.id, "position": {"x": 0, "y": 0}}})
        ctx.drag_move({"node": {"id": root.id, "position": {"x": 30, "y": 40}}})
        assert ctx.store.nodes[child.id].position == Position(530, 40)
        assert root.id in ctx.path.node_ids
        ctx.drag_stop()
        assert ctx.drag.dragging_node_id is None


class TestOpenProject:
    @pytest.mark.asyncio
    async def test_local_cache_first(self, ctx):
        ctx.remote.fail = True
        root = Node.create_root("cached", position=Position(0, 0))
        root.is_busy = True
        ctx.local.save("p2", [root], [], [root.id])

        assert await ctx.open_project("p2")
        assert ctx.store.nodes[root.id].label == "cached"
        assert not ctx.store.nodes[root.id].is_busy
        assert ctx.visibility.collapsed_ids == [root.id]
        assert ctx.sync.sync_error

    @pytest.mark.asyncio
    async def test_remote_wins(self, ctx):
        root = Node.create_root("remote copy", position=Position(0, 0))
        child = Node.create_child("branch", position=Position(450, 0))
        edge = Edge.connect(root.id, child.id)
        await ctx.remote.upsert(NODES_TABLE, [node_to_row(root, "p3"), node_to_row(child, "p3")], "project_id,node_id")
        await ctx.remote.upsert(EDGES_TABLE, [edge_to_row(edge, "p3")], "project_id,edge_id")
        ctx.local.save("p3", [Node.create_root("stale", position=Position(0, 0))], [], [])

        assert await ctx.open_project("p3")
        assert {n.label for n in ctx.store.nodes.values()} == {"remote copy", "branch"}
        assert ctx.store.validate() == []
        assert ctx.project_id == "p3"

        ctx.remote.calls.clear()
        await ctx.sync.save_now()
        # child counts are re-derived on load, so only the root may differ
        assert ("delete", NODES_TABLE) not in ctx.remote.calls

    @pytest.mark.asyncio
    async def test_cache_restore_keeps_remote_images(self, ctx, temp_dir):
        """the image-less cache copy never overwrites stored image urls."""
        await ctx.open_project("p1")
        root = ctx.store.add_node(Node.create_root("pictured", position=Position(0, 0)))
        ctx.store.update_node(root.id, image_url="https://img.test/x.png")
        await ctx.close()

        reopened = AppContext(settings=ctx.settings, client=MockClient(), remote=ctx.remote, data_dir=temp_dir)
        reopened.remote.fail = True
        assert await reopened.open_project("p1")
        assert reopened.store.nodes[root.id].image_url is None
        assert reopened.sync._timer is None

        reopened.remote.fail = False
        reopened.store.update_node(root.id, label="renamed")
        await reopened.close()
        row = next(r for r in ctx.remote.tables[NODES_TABLE] if r["node_id"] == root.id)
        assert row["title"] == "renamed"
        assert row["image_url"] == "https://img.test/x.png"

    @pytest.mark.asyncio
    async def test_switch_flushes_previous(self, ctx):
        await ctx.open_project("p1")
        await ctx.new_session("first project")
        await ctx.open_project("p4")
        assert any(r["project_id"] == "p1" for r in ctx.remote.tables[NODES_TABLE])
        assert ctx.store.nodes == {}
        await ctx.close()
