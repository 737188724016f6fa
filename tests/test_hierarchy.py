"""Tests for beatflow.hierarchy (tree, cascade, regroom)."""

import pytest

from fakes import FakeBackend, make_task

from beatflow.hierarchy.cascade import CascadeCloser, CascadeDescendant
from beatflow.hierarchy.regroom import AncestorRegroomer
from beatflow.hierarchy.tree import (
    build_children_index,
    filter_by_visible_ancestor_chain,
    get_ancestors,
    index_by_id,
)
from beatflow.workflow.model import WorkflowDescriptor, closed_states as closed_states_for


class TestTree:
    """Children index and ancestor walks."""

    def test_children_index(self):
        tasks = [make_task("p"), make_task("a", "p"), make_task("b", "p"), make_task("c", "a")]
        children = build_children_index(tasks)
        assert [t.id for t in children["p"]] == ["a", "b"]
        assert [t.id for t in children["a"]] == ["c"]
        assert "b" not in children

    def test_ancestors_bottom_up(self):
        tasks = [make_task("gp"), make_task("p", "gp"), make_task("c", "p")]
        assert get_ancestors("c", index_by_id(tasks)) == ["p", "gp"]

    def test_ancestors_self_cycle(self):
        assert get_ancestors("a", index_by_id([make_task("a", "a")])) == []

    def test_ancestors_mutual_cycle(self):
        tasks = [make_task("a", "b"), make_task("b", "a")]
        assert get_ancestors("a", index_by_id(tasks)) == ["b"]

    def test_ancestors_missing_parent(self):
        assert get_ancestors("c", index_by_id([make_task("c", "gone")])) == ["gone"]

    def test_visible_chain_filter(self):
        tasks = [
            make_task("root"),
            make_task("child", "root"),
            make_task("grandchild", "child"),
            make_task("orphan", "hidden"),
            make_task("under-orphan", "orphan"),
        ]
        visible = filter_by_visible_ancestor_chain(tasks)
        assert [t.id for t in visible] == ["root", "child", "grandchild"]

    def test_visible_chain_drops_cycles(self):
        tasks = [make_task("a", "b"), make_task("b", "a"), make_task("self", "self"), make_task("ok")]
        assert [t.id for t in filter_by_visible_ancestor_chain(tasks)] == ["ok"]


class TestCascadeCloser:
    """Leaf-first cascade close with partial-failure tolerance."""

    @pytest.mark.asyncio
    async def test_open_descendants_only(self):
        backend = FakeBackend([
            make_task("parent"),
            make_task("a", "parent", state="implementation"),
            make_task("b", "parent", state="shipped"),
        ])
        result = await CascadeCloser(backend).get_open_descendants("parent")
        assert result.ok
        assert result.data == [CascadeDescendant(id="a", title="Task a", state="implementation")]

    @pytest.mark.asyncio
    async def test_post_order(self):
        backend = FakeBackend([make_task("gp"), make_task("parent", "gp"), make_task("leaf", "parent")])
        result = await CascadeCloser(backend).get_open_descendants("gp")
        assert [d.id for d in result.data] == ["leaf", "parent"]

    @pytest.mark.asyncio
    async def test_open_grandchild_under_closed_child(self):
        backend = FakeBackend([
            make_task("root"),
            make_task("closed-child", "root", state="shipped"),
            make_task("open-grandchild", "closed-child"),
        ])
        result = await CascadeCloser(backend).get_open_descendants("root")
        assert [d.id for d in result.data] == ["open-grandchild"]

    @pytest.mark.asyncio
    async def test_preview_performs_no_writes(self):
        backend = FakeBackend([make_task("p"), make_task("c", "p")])
        await CascadeCloser(backend).get_open_descendants("p")
        assert backend.close_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tasks,root", [
        ([make_task("a", "a")], "a"),
        ([make_task("a", "b"), make_task("b", "a")], "a"),
    ])
    async def test_cycles_terminate(self, tasks, root):
        result = await CascadeCloser(FakeBackend(tasks)).get_open_descendants(root)
        assert result.ok
        assert root not in [d.id for d in result.data]

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        backend = FakeBackend(
            [make_task("parent"), make_task("bad", "parent"), make_task("good", "parent")],
            fail_close={"bad"},
        )
        result = await CascadeCloser(backend).cascade_close("parent", reason="done")
        assert result.ok
        assert result.data.closed == ["good", "parent"]
        assert len(result.data.errors) == 1
        assert result.data.errors[0].startswith("bad:")
        assert backend.close_calls == ["bad", "good", "parent"]

    @pytest.mark.asyncio
    async def test_raised_exception_recorded(self):
        backend = FakeBackend([make_task("p"), make_task("c", "p")], raise_close={"c"})
        result = await CascadeCloser(backend).cascade_close("p")
        assert result.data.closed == ["p"]
        assert result.data.errors == ["c: boom closing c"]

    @pytest.mark.asyncio
    async def test_root_failure_is_last_error(self):
        backend = FakeBackend([make_task("p"), make_task("c", "p")], fail_close={"c", "p"})
        result = await CascadeCloser(backend).cascade_close("p")
        assert result.data.closed == []
        assert [e.split(":")[0] for e in result.data.errors] == ["c", "p"]

    @pytest.mark.asyncio
    async def test_list_failure_propagates(self):
        result = await CascadeCloser(FakeBackend(fail_list=True)).cascade_close("p")
        assert not result.ok
        assert result.error_message == "tracker down"


class TestAncestorRegroomer:
    """Bottom-up auto-close of satisfied ancestors."""

    @pytest.mark.asyncio
    async def test_closes_chain(self):
        backend = FakeBackend([
            make_task("gp"),
            make_task("p", "gp"),
            make_task("c", "p", state="shipped"),
        ])
        closed = await AncestorRegroomer(backend).regroom_ancestors("c")
        assert closed == ["p", "gp"]
        assert backend.close_calls == ["p", "gp"]

    @pytest.mark.asyncio
    async def test_halts_at_open_sibling(self):
        backend = FakeBackend([
            make_task("gp"),
            make_task("p", "gp"),
            make_task("c", "p", state="shipped"),
            make_task("sibling", "p"),
        ])
        closed = await AncestorRegroomer(backend).regroom_ancestors("c")
        assert closed == []
        assert backend.close_calls == []

    @pytest.mark.asyncio
    async def test_stops_on_close_failure(self, caplog):
        backend = FakeBackend(
            [make_task("gp"), make_task("p", "gp"), make_task("c", "p", state="shipped")],
            fail_close={"p"},
        )
        closed = await AncestorRegroomer(backend).regroom_ancestors("c")
        assert closed == []
        assert backend.close_calls == ["p"]
        assert "Failed to close p" in caplog.text

    @pytest.mark.asyncio
    async def test_never_raises(self):
        backend = FakeBackend(
            [make_task("p"), make_task("c", "p", state="shipped")],
            raise_close={"p"},
        )
        assert await AncestorRegroomer(backend).regroom_ancestors("c") == []

    @pytest.mark.asyncio
    async def test_list_failure_is_silent(self):
        assert await AncestorRegroomer(FakeBackend(fail_list=True)).regroom_ancestors("c") == []

    @pytest.mark.asyncio
    async def test_cycle_terminates(self):
        backend = FakeBackend([make_task("a", "b", state="shipped"), make_task("b", "a", state="shipped")])
        closed = await AncestorRegroomer(backend).regroom_ancestors("a")
        assert closed == ["b"]


class TestConfiguredClosedStates:
    """Terminal states from configured workflows count as closed."""

    @pytest.fixture
    def closed_states(self):
        release = WorkflowDescriptor(id="release", states=("build",), terminal_states=("released",))
        return closed_states_for([release])

    @pytest.mark.asyncio
    async def test_cascade_skips_released_child(self, closed_states):
        backend = FakeBackend([
            make_task("p"),
            make_task("a", "p", state="released"),
            make_task("b", "p"),
        ])
        preview = await CascadeCloser(backend, closed_states).get_open_descendants("p")
        assert [d.id for d in preview.data] == ["b"]

        default_preview = await CascadeCloser(backend).get_open_descendants("p")
        assert [d.id for d in default_preview.data] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_regroom_counts_released_children(self, closed_states):
        tasks = [make_task("p"), make_task("c", "p", state="released")]
        assert await AncestorRegroomer(FakeBackend(tasks)).regroom_ancestors("c") == []
        assert await AncestorRegroomer(FakeBackend(tasks), closed_states).regroom_ancestors("c") == ["p"]
