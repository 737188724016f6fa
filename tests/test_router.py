"""Tests for beatflow.backends.router and tracker detection."""

import pytest

from fakes import NamedBackend

from beatflow.backends.bd_cli import BdCliBackend
from beatflow.backends.capabilities import FULL_CAPABILITIES, KNOTS_CAPABILITIES, STUB_CAPABILITIES
from beatflow.backends.detection import detect_tracker
from beatflow.backends.errors import ErrorCode
from beatflow.backends.router import (
    BackendKind,
    BackendRouter,
    create_backend,
    get_backend,
    reset_backend,
)
from beatflow.backends.stub import StubBackend
from beatflow.lib.config import BeatflowConfig


@pytest.fixture
def repos(tmp_path):
    """Three repos: knots, beads, and one with both markers."""
    knots = tmp_path / "knots-repo"
    (knots / ".knots").mkdir(parents=True)
    beads = tmp_path / "beads-repo"
    (beads / ".beads").mkdir(parents=True)
    both = tmp_path / "both-repo"
    (both / ".knots").mkdir(parents=True)
    (both / ".beads").mkdir()
    plain = tmp_path / "plain-repo"
    plain.mkdir()
    return {"knots": str(knots), "beads": str(beads), "both": str(both), "plain": str(plain)}


class RecordingFactory:
    def __init__(self):
        self.built = []

    def __call__(self, kind):
        self.built.append(kind)
        return NamedBackend(kind.value)


class TestDetectTracker:
    def test_markers(self, repos):
        assert detect_tracker(repos["knots"]) == "knots"
        assert detect_tracker(repos["beads"]) == "beads"
        assert detect_tracker(repos["both"]) == "knots"
        assert detect_tracker(repos["plain"]) is None

    def test_marker_file_is_ignored(self, tmp_path):
        (tmp_path / ".beads").write_text("not a dir")
        assert detect_tracker(tmp_path) is None


class TestBackendRouter:
    """Per-repo routing, caching and delegation."""

    def test_resolve_kind(self, repos):
        router = BackendRouter(factory=RecordingFactory())
        assert router.resolve_kind(repos["knots"]) is BackendKind.KNOTS
        assert router.resolve_kind(repos["beads"]) is BackendKind.CLI
        assert router.resolve_kind(repos["both"]) is BackendKind.KNOTS
        assert router.resolve_kind(repos["plain"]) is BackendKind.CLI
        assert router.resolve_kind(None) is BackendKind.CLI

    def test_fallback_kind(self, repos):
        router = BackendRouter(fallback=BackendKind.JSONL, factory=RecordingFactory())
        assert router.resolve_kind(repos["plain"]) is BackendKind.JSONL
        assert router.resolve_kind() is BackendKind.JSONL

    def test_decision_cached_until_cleared(self, repos, tmp_path):
        router = BackendRouter(factory=RecordingFactory())
        assert router.resolve_kind(repos["plain"]) is BackendKind.CLI
        (tmp_path / "plain-repo" / ".knots").mkdir()
        assert router.resolve_kind(repos["plain"]) is BackendKind.CLI
        router.clear_repo_cache(repos["plain"])
        assert router.resolve_kind(repos["plain"]) is BackendKind.KNOTS

    def test_capabilities_without_instantiating(self, repos):
        factory = RecordingFactory()
        router = BackendRouter(factory=factory)
        assert router.capabilities_for_repo(repos["knots"]) == KNOTS_CAPABILITIES
        assert router.capabilities_for_repo(repos["beads"]) == FULL_CAPABILITIES
        assert factory.built == []

    @pytest.mark.asyncio
    async def test_delegates_to_matching_backend(self, repos):
        factory = RecordingFactory()
        router = BackendRouter(factory=factory)
        await router.list(repo_path=repos["knots"])
        await router.close("t-1", reason="done", repo_path=repos["beads"])

        knots = router._entry(BackendKind.KNOTS).port
        cli = router._entry(BackendKind.CLI).port
        assert knots.calls == [("list", repos["knots"])]
        assert cli.calls == [("close", "t-1", "done", repos["beads"])]

    @pytest.mark.asyncio
    async def test_instances_built_once(self, repos):
        factory = RecordingFactory()
        router = BackendRouter(factory=factory)
        await router.list(repo_path=repos["knots"])
        await router.list(repo_path=repos["both"])
        await router.list(repo_path=repos["beads"])
        assert factory.built == [BackendKind.KNOTS, BackendKind.CLI]

    @pytest.mark.asyncio
    async def test_errors_pass_through(self, repos):
        router = BackendRouter(factory=RecordingFactory())
        result = await router.get("t-9", repo_path=repos["knots"])
        assert result.error.code is ErrorCode.NOT_FOUND
        assert result.error_message == "knots: t-9 missing"


class TestCreateBackend:
    def test_auto_is_router(self):
        backend = create_backend("auto", BeatflowConfig(fallback_backend="stub"))
        assert isinstance(backend, BackendRouter)
        assert backend.fallback is BackendKind.STUB
        assert backend.capabilities_for_repo() == STUB_CAPABILITIES

    def test_concrete_kinds(self):
        config = BeatflowConfig(bd_bin="/opt/bd", command_timeout=12)
        backend = create_backend("cli", config)
        assert isinstance(backend, BdCliBackend)
        assert backend.binary == "/opt/bd"
        assert backend.timeout == 12
        assert isinstance(create_backend("stub"), StubBackend)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            create_backend("sqlite")

    def test_singleton(self):
        reset_backend()
        try:
            first = get_backend(BeatflowConfig(backend="stub"))
            assert isinstance(first, StubBackend)
            assert get_backend() is first
        finally:
            reset_backend()
