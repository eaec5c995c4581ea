import asyncio

import pytest

from feed_expander.errors import SubscriptionSetupFailed
from feed_expander.hosts.simulated import SimDocument, SimElement, SimulatedHost, VirtualClock
from feed_expander.pipeline.expander import Expander

from sim_support import build_post, make_host, pump, tweet_signature


def make_expander(host, **overrides):
    # Startup and backup scans are pushed far out so each test drives scans itself.
    options = dict(
        startup_delay_ms=5000,
        backup_interval_ms=60000,
        after=host.clock.after,
        after_cancel=host.clock.cancel,
    )
    options.update(overrides)
    return Expander(host, tweet_signature(), **options)


def add_posts(host, count, spacing=250.0):
    buttons = []
    for index in range(count):
        article, button = build_post(y=index * spacing)
        host.document.body.append(article)
        buttons.append(button)
    return buttons


class YieldingHost(SimulatedHost):
    async def describe(self, element, signature):
        await asyncio.sleep(0)
        return await super().describe(element, signature)


def test_scans_admit_at_most_one_batch_each():
    host = make_host()
    add_posts(host, 7)
    expander = make_expander(host, batch_size=5)

    async def scenario():
        await expander.start()
        counts = [len(await expander.scan_and_admit()) for _ in range(3)]
        expander.stop()
        return counts

    assert asyncio.run(scenario()) == [5, 2, 0]
    assert expander.stats.admitted == 7
    assert expander.stats.deferred == 2


def test_every_post_is_expanded_once_as_it_becomes_visible():
    host = make_host()
    buttons = add_posts(host, 7)
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        await expander.scan_and_admit()
        await pump(host.clock, 400)
        # Buttons at y=160, 410 and 660 are in view; the rest wait.
        assert [b.clicks for b in buttons] == [1, 1, 1, 0, 0, 0, 0]

        host.document.scroll_to(800.0)
        await pump(host.clock, 400)
        assert [b.clicks for b in buttons] == [1, 1, 1, 1, 1, 0, 0]

        await expander.scan_and_admit()
        await pump(host.clock, 400)
        await expander.scan_and_admit()
        await pump(host.clock, 1000)
        expander.stop()

    asyncio.run(scenario())

    assert [b.clicks for b in buttons] == [1] * 7
    assert expander.stats.released == 7
    assert expander.stats.dispatched == 7


def test_visibility_flapping_and_rescans_never_repeat_an_activation():
    host = make_host()
    article, button = build_post(y=2000.0)
    host.document.body.append(article)
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        await expander.scan_and_admit()
        await pump(host.clock, 50)
        for y in (1500.0, 0.0, 1500.0, 0.0, 1500.0):
            host.document.scroll_to(y)
            await pump(host.clock, 20)
            await expander.scan_and_admit()
        await pump(host.clock, 1000)
        expander.stop()

    asyncio.run(scenario())

    assert button.clicks == 1
    assert expander.stats.released == 1


def test_overlapping_scans_admit_each_element_once():
    host = YieldingHost(SimDocument(VirtualClock()))
    buttons = add_posts(host, 3)
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        results = await asyncio.gather(expander.scan_and_admit("a"), expander.scan_and_admit("b"))
        await pump(host.clock, 400)
        expander.stop()
        return results

    results = asyncio.run(scenario())

    assert sorted(len(batch) for batch in results) == [0, 3]
    assert [b.clicks for b in buttons] == [1, 1, 1]
    assert expander.stats.scans == 2


def test_mutations_trigger_one_debounced_scan():
    host = make_host()
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        first, _ = build_post(y=0)
        host.document.body.append(first)
        await pump(host.clock, 100)
        second, _ = build_post(y=250)
        host.document.body.append(second)
        await pump(host.clock, 299)
        assert expander.stats.scans == 0
        await pump(host.clock, 1)
        expander.stop()

    asyncio.run(scenario())

    assert expander.stats.scans == 1
    assert expander.stats.admitted == 2
    assert expander.watcher.batches_relevant == 2


def test_unrelated_mutations_do_not_scan():
    host = make_host()
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        host.document.body.append(SimElement("div", {"class": "ad"}, "Sponsored"))
        await pump(host.clock, 1000)
        expander.stop()

    asyncio.run(scenario())

    assert expander.stats.scans == 0


def test_route_change_rescans_after_settling():
    host = make_host()
    add_posts(host, 1)
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        host.document.navigate("https://x.com/explore")
        await pump(host.clock, 1290)
        assert expander.stats.scans == 0
        await pump(host.clock, 10)
        expander.stop()

    asyncio.run(scenario())

    assert expander.stats.scans == 1
    assert expander.stats.admitted == 1


def test_route_change_during_mutation_burst_rescans_once_per_trigger():
    host = make_host()
    expander = make_expander(host)
    scans = []
    request_scan = expander.request_scan

    def record_scan(reason):
        scans.append((reason, host.clock.now_ms))
        request_scan(reason)

    expander.request_scan = record_scan

    async def scenario():
        await expander.start()
        host.document.navigate("https://x.com/explore")
        for index in range(15):
            article, _ = build_post(y=index * 250.0)
            host.document.body.append(article)
            await pump(host.clock, 100)
        await pump(host.clock, 500)
        expander.stop()

    asyncio.run(scenario())

    # Poll at 500ms plus 800ms settle; the last append at 1400ms plus 300ms debounce.
    assert scans == [("navigation", 1300), ("mutation", 1700)]
    assert expander.navigation.navigations == 1


def test_startup_scan_runs_after_delay():
    host = make_host()
    buttons = add_posts(host, 2)
    expander = make_expander(host, startup_delay_ms=1000)

    async def scenario():
        await expander.start()
        await pump(host.clock, 990)
        assert expander.stats.scans == 0
        await pump(host.clock, 400)
        expander.stop()

    asyncio.run(scenario())

    assert expander.stats.scans == 1
    assert [b.clicks for b in buttons] == [1, 1]


def test_backup_scan_prunes_detached_pending_elements():
    host = make_host()
    article, button = build_post(y=3000.0)
    host.document.body.append(article)
    expander = make_expander(host, backup_interval_ms=3000)

    async def scenario():
        await expander.start()
        await expander.scan_and_admit()
        await pump(host.clock, 50)
        assert host.observed_count == 1
        article.remove()
        await pump(host.clock, 2950)
        expander.stop()

    asyncio.run(scenario())

    assert expander.stats.pruned == 1
    assert button.clicks == 0
    assert host.observed_count == 0


def test_stop_cancels_everything():
    host = make_host()
    buttons = add_posts(host, 7)
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        await expander.scan_and_admit()
        # Three buttons are released with activations scheduled, two are still pending.
        await pump(host.clock, 20)
        expander.stop()
        extra, _ = build_post(y=0)
        host.document.body.append(extra)
        expander.request_scan("late")
        await pump(host.clock, 10000)

    asyncio.run(scenario())

    assert [b.clicks for b in buttons] == [0] * 7
    assert expander.stats.scans == 1
    assert host.clock.pending == 0
    assert host.observed_count == 0
    assert host.idle_pending == 0
    assert len(expander.tasks) == 0


def test_stop_cancels_idle_deferred_batches():
    host = make_host()
    host.set_busy(True)
    buttons = add_posts(host, 2)
    expander = make_expander(host)

    async def scenario():
        await expander.start()
        await expander.scan_and_admit()
        assert host.idle_pending == 1
        expander.stop()
        host.set_busy(False)
        await pump(host.clock, 3000)

    asyncio.run(scenario())

    assert host.idle_pending == 0
    assert len(expander.pending) == 0
    assert [b.clicks for b in buttons] == [0, 0]


def test_setup_failure_is_reported_and_nothing_runs():
    host = SimulatedHost(SimDocument(VirtualClock()), observers_available=False)
    expander = make_expander(host)

    with pytest.raises(SubscriptionSetupFailed):
        asyncio.run(expander.start())

    assert expander.stopped
    assert not expander.running
    assert host.clock.pending == 0
