"""
Tests for the EPG refresh pipeline and single-flight coordination
"""
import asyncio
import json

import httpx
import pytest

from conftest import make_xmltv, seed_source
from epg_indexer.errors import StructuralOrchestrationError
from epg_indexer.services import epg_refresh_service, index_store
from epg_indexer.services.epg_refresh_service import (
    EPGRefreshPipeline,
    refresh_epg,
    start_background_refresh,
)
from epg_indexer.services.fetch_types import EpgSource, ProgressEvent
from epg_indexer.services.index_store import DUMMY_CHANNEL_ID


CACHED = EpgSource(name="cached", url="http://cached.example.com/epg.xml")
FRESH = EpgSource(name="fresh", url="http://fresh.example.com/epg.xml")
DOWN = EpgSource(name="down", url="http://down.example.com/epg.xml")

FRESH_DOC = make_xmltv(channels=[("f1.tv", ["Fresh One"]), ("f2.tv", ["Fresh Two"])])


def run_refresh(sources, coordinator, store, handler, **kwargs):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await refresh_epg(
                sources,
                coordinator,
                store,
                client=client,
                fetch_backoff=0,
                **kwargs,
            )

    return asyncio.run(_run())


def visible_files(store):
    return sorted(path.name for path in store.epg_dir.iterdir() if not path.name.startswith("."))


class TestConditionalRefresh:
    """Per-source conditional download behaviour"""

    def test_not_modified_keeps_raw_and_index(self, store, coordinator):
        old_doc = make_xmltv(channels=[("c.tv", ["Cached TV"])])
        seed_source(store, CACHED, old_doc, etag='"v1"')

        def handler(request):
            assert request.headers["if-none-match"] == '"v1"'
            return httpx.Response(304)

        result = run_refresh([CACHED], coordinator, store, handler)

        assert [item.status for item in result.results] == ["unchanged"]
        assert result.changed is False
        assert store.raw_path("cached").read_text(encoding="utf-8") == old_doc
        assert asyncio.run(store.read_combined_name_index())["cached tv"] == "c.tv"
        assert asyncio.run(store.read_cache_meta())["cached"].etag == '"v1"'

    def test_modified_updates_meta_and_replaces_index(self, store, coordinator):
        seed_source(store, FRESH, make_xmltv(channels=[("gone.tv", ["Gone"])]), etag='"old"')

        def handler(request):
            return httpx.Response(
                200,
                content=FRESH_DOC.encode("utf-8"),
                headers={"ETag": '"new"', "Last-Modified": "Fri, 03 Jan 2025 10:00:00 GMT"},
            )

        result = run_refresh([FRESH], coordinator, store, handler)

        assert [item.status for item in result.results] == ["changed"]
        entry = asyncio.run(store.read_cache_meta())["fresh"]
        assert entry.etag == '"new"'
        assert entry.last_modified == "Fri, 03 Jan 2025 10:00:00 GMT"
        assert entry.updated_at > 1

        source_index = asyncio.run(store.read_source_index("fresh"))
        assert source_index.name_to_id == {"fresh one": "f1.tv", "fresh two": "f2.tv"}
        assert "gone.tv" not in asyncio.run(store.read_combined_id_names())

    def test_missing_validators_are_stored_as_null(self, store, coordinator):
        def handler(request):
            return httpx.Response(200, content=FRESH_DOC.encode("utf-8"))

        run_refresh([FRESH], coordinator, store, handler)

        meta = json.loads(store.meta_path.read_text(encoding="utf-8"))
        assert meta["fresh"]["etag"] is None
        assert meta["fresh"]["lastModified"] is None

    def test_malformed_document_is_isolated(self, store, coordinator):
        old_doc = make_xmltv(channels=[("keep.tv", ["Keep Me"])])
        seed_source(store, FRESH, old_doc, etag='"v1"')

        def handler(request):
            if request.url.host == "fresh.example.com":
                return httpx.Response(200, content=b'<tv><channel id="x"><display-name>X')
            return httpx.Response(200, content=make_xmltv(channels=[("c.tv", ["Cached"])]).encode())

        result = run_refresh([FRESH, CACHED], coordinator, store, handler)

        assert [item.status for item in result.results] == ["error", "changed"]
        assert store.raw_path("fresh").read_text(encoding="utf-8") == old_doc
        assert asyncio.run(store.read_source_index("fresh")).name_to_id == {"keep me": "keep.tv"}
        assert asyncio.run(store.read_cache_meta())["fresh"].etag == '"v1"'
        assert not any(path.name.startswith(".") for path in store.epg_dir.iterdir())


class TestEndToEnd:

    def test_mixed_outcomes(self, store, coordinator):
        seed_source(store, CACHED, make_xmltv(channels=[("c.tv", ["Cached TV"])]), etag='"c1"')
        seed_source(store, DOWN, make_xmltv(channels=[("d.tv", ["Down TV"])]), etag='"d1"')

        def handler(request):
            if request.url.host == "cached.example.com":
                return httpx.Response(304)
            if request.url.host == "fresh.example.com":
                return httpx.Response(200, content=FRESH_DOC.encode("utf-8"), headers={"ETag": '"f1"'})
            raise httpx.ReadTimeout("timed out", request=request)

        result = run_refresh([CACHED, FRESH, DOWN], coordinator, store, handler, max_concurrency=2)

        assert [item.name for item in result.results] == ["cached", "fresh", "down"]
        assert [item.status for item in result.results] == ["unchanged", "changed", "error"]
        assert result.changed is True

        id_names = asyncio.run(store.read_combined_id_names())
        assert set(id_names) == {"c.tv", "f1.tv", "f2.tv", "d.tv", DUMMY_CHANNEL_ID}

        merged = store.merged_path.read_text(encoding="utf-8")
        for channel_id in ("c.tv", "f1.tv", "f2.tv", "d.tv"):
            assert f'<channel id="{channel_id}">' in merged

        assert visible_files(store) == sorted([
            "cached.idnames.json", "cached.index.json", "cached.xml",
            "down.idnames.json", "down.index.json", "down.xml",
            "fresh.idnames.json", "fresh.index.json", "fresh.xml",
            "id_names.json", "merged.xml", "meta.json", "name_index.json",
        ])

    def test_merge_skipped_when_nothing_changed(self, store, coordinator):
        seed_source(store, CACHED, make_xmltv(channels=[("c.tv", ["Cached TV"])]), etag='"c1"')
        store.merged_path.write_text("<tv>previous</tv>", encoding="utf-8")

        result = run_refresh([CACHED], coordinator, store, lambda request: httpx.Response(304))

        assert result.changed is False
        assert store.merged_path.read_text(encoding="utf-8") == "<tv>previous</tv>"

    def test_missing_merged_document_is_rebuilt(self, store, coordinator):
        seed_source(store, CACHED, make_xmltv(channels=[("c.tv", ["Cached TV"])]), etag='"c1"')

        run_refresh([CACHED], coordinator, store, lambda request: httpx.Response(304))

        assert '<channel id="c.tv">' in store.merged_path.read_text(encoding="utf-8")

    def test_no_sources(self, store, coordinator):
        result = run_refresh([], coordinator, store, lambda request: httpx.Response(500))

        assert result.results == []
        assert asyncio.run(store.read_combined_id_names()) == {DUMMY_CHANNEL_ID: ["dummy channel"]}
        assert store.merged_path.read_text(encoding="utf-8") == "<tv></tv>"


class TestProgress:

    def test_pipeline_emits_phases(self, store):
        events = []

        async def _run():
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=FRESH_DOC.encode()))
            async with httpx.AsyncClient(transport=transport) as client:
                pipeline = EPGRefreshPipeline([FRESH], store, client, on_progress=events.append, fetch_backoff=0)
                return await pipeline.run()

        asyncio.run(_run())

        assert events == [
            ProgressEvent(phase="download", index=1, total=1, name="fresh"),
            ProgressEvent(phase="index", name="fresh"),
            ProgressEvent(phase="merge"),
        ]

    def test_failing_callback_does_not_break_refresh(self, store):
        def explode(event):
            raise RuntimeError("observer bug")

        async def _run():
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=FRESH_DOC.encode()))
            async with httpx.AsyncClient(transport=transport) as client:
                return await EPGRefreshPipeline([FRESH], store, client, on_progress=explode).run()

        result = asyncio.run(_run())
        assert [item.status for item in result.results] == ["changed"]

    def test_status_after_success(self, store, coordinator):
        run_refresh([FRESH, CACHED], coordinator, store, lambda request: httpx.Response(200, content=FRESH_DOC.encode()))

        status = coordinator.snapshot()
        assert status.running is False
        assert status.phase == "idle"
        assert status.current == 2
        assert status.total == 2
        assert status.last_run is not None
        assert status.last_error is None


class TestSingleFlight:

    def test_concurrent_refresh_is_skipped(self, store, coordinator):
        async def scenario():
            entered = asyncio.Event()
            release = asyncio.Event()

            async def handler(request):
                entered.set()
                await release.wait()
                return httpx.Response(200, content=FRESH_DOC.encode())

            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                first = asyncio.create_task(refresh_epg([FRESH], coordinator, store, client=client, fetch_backoff=0))
                await entered.wait()

                before = coordinator.snapshot()
                second = await refresh_epg([FRESH, CACHED], coordinator, store, client=client)
                after = coordinator.snapshot()

                release.set()
                first_result = await first
            return before, second, after, first_result

        before, second, after, first_result = asyncio.run(scenario())

        assert second.skipped is True
        assert second.results == []
        assert after == before
        assert before.running is True
        assert before.total == 1
        assert first_result.skipped is False
        assert coordinator.is_running() is False

    def test_background_refresh_ignored_while_running(self, store, coordinator):
        coordinator.try_begin(1)

        async def _run():
            return start_background_refresh([FRESH], coordinator, store)

        assert asyncio.run(_run()) is None

    def test_back_to_back_background_requests(self, store, coordinator):
        async def _run():
            first = start_background_refresh([], coordinator, store)
            running_after_first = coordinator.is_running()
            second = start_background_refresh([], coordinator, store)
            await first
            return first, running_after_first, second

        first, running_after_first, second = asyncio.run(_run())

        assert first is not None
        assert running_after_first is True
        assert second is None
        assert coordinator.is_running() is False

    def test_background_refresh_completes(self, store, coordinator):
        async def _run():
            task = start_background_refresh([], coordinator, store)
            assert task is not None
            await task

        asyncio.run(_run())

        assert coordinator.is_running() is False
        assert coordinator.snapshot().last_run is not None
        assert store.merged_path.exists()


class TestStructuralFailure:

    def test_error_recorded_and_cleared_by_next_run(self, store, coordinator, monkeypatch):
        async def broken_write(meta):
            raise OSError("disk full")

        monkeypatch.setattr(store, "write_cache_meta", broken_write)

        with pytest.raises(StructuralOrchestrationError):
            run_refresh([], coordinator, store, lambda request: httpx.Response(500))

        status = coordinator.snapshot()
        assert status.running is False
        assert "disk full" in status.last_error

        monkeypatch.undo()
        run_refresh([], coordinator, store, lambda request: httpx.Response(500))
        assert coordinator.snapshot().last_error is None

    def test_store_setup_failure_releases_slot(self, coordinator, monkeypatch):
        def unwritable_store(epg_dir):
            raise OSError("permission denied")

        monkeypatch.setattr(epg_refresh_service, "IndexStore", unwritable_store)

        with pytest.raises(StructuralOrchestrationError):
            asyncio.run(refresh_epg([FRESH], coordinator))

        status = coordinator.snapshot()
        assert status.running is False
        assert status.phase == "idle"
        assert "permission denied" in status.last_error
        assert coordinator.try_begin(1) is True

    def test_index_write_failure_keeps_previous_source(self, store, coordinator, monkeypatch):
        old_doc = make_xmltv(channels=[("keep.tv", ["Keep Me"])])
        seed_source(store, FRESH, old_doc, etag='"v1"')
        real_stage_json = index_store.stage_json
        calls = []

        async def second_write_fails(target, payload):
            calls.append(target)
            if len(calls) == 2:
                raise OSError("disk full")
            return await real_stage_json(target, payload)

        monkeypatch.setattr(index_store, "stage_json", second_write_fails)

        result = run_refresh([FRESH], coordinator, store, lambda request: httpx.Response(200, content=FRESH_DOC.encode()))

        assert [item.status for item in result.results] == ["error"]
        assert store.raw_path("fresh").read_text(encoding="utf-8") == old_doc
        assert asyncio.run(store.read_source_index("fresh")).name_to_id == {"keep me": "keep.tv"}
        assert asyncio.run(store.read_cache_meta())["fresh"].etag == '"v1"'
        assert not any(path.name.startswith(".") for path in store.epg_dir.iterdir())
