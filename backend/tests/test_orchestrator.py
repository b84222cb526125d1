from __future__ import annotations

import asyncio

import pytest

from categories.types import CategoryRef
from geo.bounds import Bounds
from providers.in_memory import InMemoryProvider
from viewport.static import StaticViewport

CAVES = CategoryRef("builtin", "caves")
SHELTERS = CategoryRef("builtin", "shelters")
TOWERS = CategoryRef("builtin", "towers")
HAMMOCKS = CategoryRef("external", "hammocks")

BASE = Bounds(north=60.0, south=59.0, east=11.0, west=10.0)
# 40% of the span north: significant under the default 30% threshold.
MOVED = Bounds(north=60.4, south=59.4, east=11.0, west=10.0)


def _ids(visible, ref):
    return [e.id for e in visible[ref]]


class RecordingTelemetry:
    def __init__(self):
        self.rows = []

    def record(self, **kwargs):
        self.rows.append(kwargs)


class BrokenViewport(StaticViewport):
    def get_bounds(self):
        raise RuntimeError("map not ready")


def test_initial_cycle_fetches_each_active_category_once(make_orchestrator, viewport):
    orch, providers = make_orchestrator()

    report = asyncio.run(orch.reconcile([CAVES, SHELTERS, HAMMOCKS], viewport, trigger="initial"))

    assert report is not None and report.ok
    assert providers["builtin"].calls_for("caves") == 1
    assert providers["builtin"].calls_for("shelters") == 1
    assert providers["external"].calls_for("hammocks") == 1
    visible = orch.visible
    assert _ids(visible, CAVES) == ["cave-1", "cave-2"]
    assert _ids(visible, SHELTERS) == ["shelter-1"]
    assert _ids(visible, HAMMOCKS) == ["hammock-1"]
    assert report.fetches_by_kind() == {"builtin": 2, "external": 1}
    assert orch.is_loading is False
    assert orch.last_error is None
    assert len(orch.cache) == 3


def test_fetch_uses_buffered_bounds(make_orchestrator, viewport):
    orch, providers = make_orchestrator()
    asyncio.run(orch.reconcile([CAVES], viewport, trigger="initial"))

    call = providers["builtin"].calls[0]
    assert call.bounds.north == pytest.approx(60.1)
    assert call.bounds.west == pytest.approx(9.9)
    assert call.zoom == 12.0


def test_repeated_reconcile_is_idempotent(make_orchestrator, viewport):
    orch, providers = make_orchestrator()

    async def run():
        first = await orch.reconcile([CAVES, SHELTERS], viewport, trigger="initial")
        again = await orch.reconcile([CAVES, SHELTERS], viewport, trigger="move")
        forced = await orch.reconcile([CAVES, SHELTERS], viewport, trigger="categories")
        return first, again, forced

    first, again, forced = asyncio.run(run())
    assert first is not None
    assert again is None
    assert forced is not None
    assert forced.cache_hits == [CAVES, SHELTERS]
    assert forced.fetched == []
    assert len(providers["builtin"].calls) == 2
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]


def test_categories_below_min_zoom_are_empty_and_not_requested(make_orchestrator):
    orch, providers = make_orchestrator()
    low = StaticViewport(BASE, zoom=11.0)

    report = asyncio.run(orch.reconcile([CAVES, HAMMOCKS], low, trigger="initial"))

    assert report.below_threshold == [HAMMOCKS]
    assert orch.visible[HAMMOCKS] == []
    assert providers["external"].calls == []
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]


def test_zooming_out_below_threshold_hides_category(make_orchestrator, viewport):
    orch, providers = make_orchestrator()

    async def run():
        await orch.reconcile([CAVES, HAMMOCKS], viewport, trigger="initial")
        viewport.move_to(BASE, zoom=11.0)
        return await orch.reconcile([CAVES, HAMMOCKS], viewport, trigger="move")

    report = asyncio.run(run())
    assert report is not None
    assert orch.visible[HAMMOCKS] == []
    assert providers["external"].calls_for("hammocks") == 1


def test_small_pan_is_ignored_and_large_pan_refetches(make_orchestrator, viewport):
    orch, providers = make_orchestrator()

    async def run():
        await orch.reconcile([CAVES], viewport, trigger="initial")
        viewport.move_to(Bounds(north=60.29, south=59.29, east=11.0, west=10.0))
        small = await orch.reconcile([CAVES], viewport, trigger="move")
        viewport.move_to(Bounds(north=60.31, south=59.31, east=11.0, west=10.0))
        large = await orch.reconcile([CAVES], viewport, trigger="move")
        return small, large

    small, large = asyncio.run(run())
    assert small is None
    assert large is not None
    assert providers["builtin"].calls_for("caves") == 2


def test_partial_failure_falls_back_to_snapshot(make_orchestrator, viewport, entities, flaky_provider):
    builtin = flaky_provider(InMemoryProvider(entities))
    orch, _ = make_orchestrator(
        providers={"builtin": builtin, "external": InMemoryProvider(entities)}
    )

    async def run():
        await orch.reconcile([CAVES, SHELTERS], viewport, trigger="initial")
        builtin.failing.add("caves")
        viewport.move_to(MOVED)
        return await orch.reconcile([CAVES, SHELTERS], viewport, trigger="move")

    report = asyncio.run(run())
    assert list(report.failures) == [CAVES]
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]
    assert _ids(orch.visible, SHELTERS) == ["shelter-1"]
    assert orch.last_error == (
        "Failed to load POIs for builtin:caves: Backend rate limit exceeded (HTTP 429)"
    )
    assert orch.is_loading is False


def test_failure_without_any_prior_data_shows_nothing(make_orchestrator, viewport, entities, flaky_provider):
    builtin = flaky_provider(InMemoryProvider(entities), failing={"caves"})
    orch, _ = make_orchestrator(providers={"builtin": builtin})

    report = asyncio.run(orch.reconcile([CAVES, SHELTERS], viewport, trigger="initial"))

    assert CAVES in report.failures
    assert orch.visible[CAVES] == []
    assert _ids(orch.visible, SHELTERS) == ["shelter-1"]
    assert CAVES not in orch.snapshot


def test_one_failing_category_does_not_affect_its_neighbours(
    make_orchestrator, viewport, entities, flaky_provider
):
    builtin = flaky_provider(InMemoryProvider(entities))
    orch, _ = make_orchestrator(providers={"builtin": builtin})
    active = [CAVES, SHELTERS, TOWERS]

    async def run():
        await orch.reconcile(active, viewport, trigger="initial")
        builtin.failing.add("shelters")
        viewport.move_to(MOVED)
        return await orch.reconcile(active, viewport, trigger="move")

    report = asyncio.run(run())
    # Caves and towers were refetched for the new viewport.
    assert sorted(report.fetched, key=str) == [CAVES, SHELTERS, TOWERS]
    assert builtin.calls_for("caves") == 2
    assert builtin.calls_for("towers") == 2
    assert list(report.failures) == [SHELTERS]
    visible = orch.visible
    assert _ids(visible, CAVES) == ["cave-1", "cave-2"]
    assert _ids(visible, TOWERS) == ["tower-1"]
    # Shelters keep the previous viewport's data.
    assert _ids(visible, SHELTERS) == ["shelter-1"]
    assert orch.last_error is not None
    assert "builtin:shelters" in orch.last_error
    assert "builtin:caves" not in orch.last_error


def test_failed_viewport_is_retried_on_next_trigger(make_orchestrator, viewport, entities, flaky_provider):
    builtin = flaky_provider(InMemoryProvider(entities), failing={"caves"})
    orch, _ = make_orchestrator(providers={"builtin": builtin})

    async def run():
        await orch.reconcile([CAVES], viewport, trigger="initial")
        builtin.failing.clear()
        # Same viewport: still runs because the failed cycle did not mark it as seen.
        return await orch.reconcile([CAVES], viewport, trigger="move")

    retry = asyncio.run(run())
    assert retry is not None and retry.ok
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]
    assert orch.last_error is None


def test_stale_entry_is_refetched_after_ttl(make_orchestrator, viewport, clock):
    orch, providers = make_orchestrator()

    async def run():
        await orch.reconcile([CAVES], viewport, trigger="initial")
        clock.advance(299)
        fresh = await orch.reconcile([CAVES], viewport, trigger="refresh")
        clock.advance(2)
        stale = await orch.reconcile([CAVES], viewport, trigger="refresh")
        return fresh, stale

    fresh, stale = asyncio.run(run())
    assert fresh.cache_hits == [CAVES]
    assert stale.fetched == [CAVES]
    assert providers["builtin"].calls_for("caves") == 2


def test_reactivated_category_falls_back_to_stale_cache(
    make_orchestrator, viewport, entities, clock, flaky_provider
):
    builtin = flaky_provider(InMemoryProvider(entities))
    orch, _ = make_orchestrator(providers={"builtin": builtin})

    async def run():
        await orch.reconcile([CAVES, SHELTERS], viewport, trigger="initial")
        await orch.reconcile([SHELTERS], viewport, trigger="categories")
        assert CAVES not in orch.snapshot
        clock.advance(301)
        builtin.failing.add("caves")
        return await orch.reconcile([CAVES, SHELTERS], viewport, trigger="categories")

    report = asyncio.run(run())
    assert CAVES in report.failures
    # No snapshot value any more: the stale cache entry for this exact view is used.
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]


def test_concurrent_cycles_share_inflight_fetches(make_orchestrator, viewport):
    orch, providers = make_orchestrator(latency_s=0.02)

    async def run():
        first = orch.reconcile([CAVES, SHELTERS], viewport, trigger="initial")
        second = orch.reconcile([CAVES, SHELTERS], viewport, trigger="categories")
        return await asyncio.gather(first, second)

    first, second = asyncio.run(run())
    assert len(providers["builtin"].calls) == 2
    assert first.superseded is True
    assert sorted(first.fetched, key=str) == [CAVES, SHELTERS]
    assert second.superseded is False
    assert sorted(second.deduplicated, key=str) == [CAVES, SHELTERS]
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]
    assert orch.inflight_count == 0
    assert orch.is_loading is False


def test_is_loading_while_fetching(make_orchestrator, viewport):
    orch, _ = make_orchestrator(latency_s=0.05)

    async def run():
        task = asyncio.ensure_future(orch.reconcile([CAVES], viewport, trigger="initial"))
        await asyncio.sleep(0.01)
        during = orch.is_loading
        await task
        return during

    assert asyncio.run(run()) is True


def test_cancelled_cycle_releases_loading_state(make_orchestrator, viewport):
    orch, providers = make_orchestrator(latency_s=0.05)

    async def run():
        task = asyncio.ensure_future(orch.reconcile([CAVES], viewport, trigger="initial"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        loading = orch.is_loading
        # The shared fetch is not cancelled; let it land in the cache.
        await asyncio.sleep(0.08)
        retry = await orch.reconcile([CAVES], viewport, trigger="move")
        return loading, retry

    loading, retry = asyncio.run(run())
    assert loading is False
    # Same viewport, plain move trigger: not swallowed by a stale in-progress marker.
    assert retry is not None
    assert retry.cache_hits == [CAVES]
    assert providers["builtin"].calls_for("caves") == 1
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]
    assert orch.is_loading is False
    assert orch.is_loading is False


def test_missing_provider_is_a_per_category_failure(make_orchestrator, viewport, entities):
    orch, _ = make_orchestrator(providers={"builtin": InMemoryProvider(entities)})

    report = asyncio.run(orch.reconcile([CAVES, HAMMOCKS], viewport, trigger="initial"))

    assert list(report.failures) == [HAMMOCKS]
    assert "No provider configured for external" in report.failures[HAMMOCKS]
    assert orch.visible[HAMMOCKS] == []
    assert _ids(orch.visible, CAVES) == ["cave-1", "cave-2"]


def test_cycle_level_error_sets_last_error(make_orchestrator):
    orch, providers = make_orchestrator()
    broken = BrokenViewport(BASE, zoom=12.0)

    report = asyncio.run(orch.reconcile([CAVES], broken, trigger="initial"))

    assert report is None
    assert orch.last_error == "Failed to load POIs: map not ready"
    assert orch.is_loading is False
    assert providers["builtin"].calls == []


def test_unknown_category_is_a_cycle_level_error(make_orchestrator, viewport):
    orch, _ = make_orchestrator()

    report = asyncio.run(orch.reconcile([CategoryRef("builtin", "volcanoes")], viewport))

    assert report is None
    assert orch.last_error is not None
    assert "volcanoes" in orch.last_error


def test_close_discards_late_results(make_orchestrator, viewport):
    orch, _ = make_orchestrator(latency_s=0.05)

    async def run():
        task = asyncio.ensure_future(orch.reconcile([CAVES], viewport, trigger="initial"))
        await asyncio.sleep(0.01)
        orch.close()
        report = await task
        after = await orch.reconcile([CAVES], viewport, trigger="refresh")
        return report, after

    report, after = asyncio.run(run())
    assert report.superseded is True
    assert CAVES not in orch.visible
    assert len(orch.cache) == 0
    assert after is None
    assert orch.closed
    assert orch.is_loading is False


def test_force_refresh_reruns_unchanged_viewport(make_orchestrator, viewport):
    orch, providers = make_orchestrator()

    async def run():
        await orch.reconcile([CAVES], viewport, trigger="initial")
        skipped = await orch.reconcile([CAVES], viewport, trigger="move")
        orch.force_refresh()
        rerun = await orch.reconcile([CAVES], viewport, trigger="move")
        return skipped, rerun

    skipped, rerun = asyncio.run(run())
    assert skipped is None
    assert rerun is not None
    # Cache is kept: the rerun is served from it.
    assert rerun.cache_hits == [CAVES]
    assert providers["builtin"].calls_for("caves") == 1


def test_clear_cache_forgets_everything(make_orchestrator, viewport):
    orch, providers = make_orchestrator()

    async def run():
        await orch.reconcile([CAVES], viewport, trigger="initial")
        orch.clear_cache()
        assert len(orch.cache) == 0
        assert orch.visible == {}
        assert orch.snapshot == {}
        return await orch.reconcile([CAVES], viewport, trigger="move")

    report = asyncio.run(run())
    assert report.fetched == [CAVES]
    assert providers["builtin"].calls_for("caves") == 2


def test_completed_cycles_are_reported_to_telemetry(make_orchestrator, viewport):
    telemetry = RecordingTelemetry()
    orch, _ = make_orchestrator(telemetry=telemetry)

    async def run():
        await orch.reconcile([CAVES, HAMMOCKS], viewport, trigger="initial")
        await orch.reconcile([CAVES, HAMMOCKS], viewport, trigger="move")

    asyncio.run(run())
    assert len(telemetry.rows) == 1
    row = telemetry.rows[0]
    assert row["trigger"] == "initial"
    assert row["view_zoom"] == 12.0
    assert row["bounds"]["north"] == pytest.approx(60.1)
    stats = row["stats"]
    assert stats["fetched"] == 2
    assert stats["fetchedByKind"] == {"builtin": 1, "external": 1}
    assert stats["failures"] == {}
    assert stats["cache"]["entries"] == 2
    assert "total" in stats["timingsMs"]
