import asyncio

import pytest
from cssselect import SelectorError

from feed_expander.errors import SubscriptionSetupFailed
from feed_expander.hosts.simulated import SimElement, VirtualClock

from sim_support import SHOW_MORE_TESTID, build_post, make_host, pump, tweet_signature


def test_virtual_clock_runs_due_callbacks_in_order():
    clock = VirtualClock()
    fired = []
    clock.after(30, lambda: fired.append("c"))
    first = clock.after(10, lambda: fired.append("a"))
    clock.after(10, lambda: fired.append("b"))
    clock.cancel(first)

    clock.advance(20)
    assert fired == ["b"]
    assert clock.now_ms == 20

    clock.advance(10)
    assert fired == ["b", "c"]
    assert clock.pending == 0


def test_mutations_are_delivered_once_per_turn_with_selector_summaries():
    host = make_host()
    batches = []

    async def scenario():
        await host.observe_mutations(batches.append, ['article[role="article"]', "button"])
        article, _button = build_post()
        host.document.body.append(article)
        host.document.body.append(SimElement("div", {"class": "ad"}))
        await pump(host.clock, 10)

    asyncio.run(scenario())

    assert len(batches) == 1
    records = batches[0]
    assert [r.type for r in records] == ["childList", "childList"]
    assert records[0].added_nodes[0].matched == frozenset({'article[role="article"]', "button"})
    assert records[1].added_nodes[0].matched == frozenset()


def test_closed_mutation_subscription_stops_delivery():
    host = make_host()
    batches = []

    async def scenario():
        subscription = await host.observe_mutations(batches.append, ["button"])
        subscription.close()
        host.document.body.append(SimElement("button"))
        await pump(host.clock, 10)

    asyncio.run(scenario())
    assert batches == []


def test_visibility_entries_follow_scroll_and_margin():
    host = make_host()
    entries = []
    article, button = build_post(y=1000.0)  # button at y=1160, below an 800px viewport
    host.document.body.append(article)

    async def scenario():
        await host.observe_visibility(button, 0.1, 100, entries.append)
        await pump(host.clock, 10)
        host.document.scroll_to(300.0)  # expanded viewport now reaches y=1200
        await pump(host.clock, 10)

    asyncio.run(scenario())

    assert [e.is_intersecting for e in entries] == [False, True]
    assert entries[0].intersection_ratio == 0.0
    assert entries[1].intersection_ratio == pytest.approx(1.0)
    assert entries[1].target is button


def test_idle_callbacks_wait_for_idle_or_deadline():
    host = make_host()
    ran = []
    host.set_busy(True)
    host.request_idle(lambda: ran.append("first"), 1000)
    host.request_idle(lambda: ran.append("second"), 5000)

    host.clock.advance(999)
    assert ran == []
    host.clock.advance(1)
    assert ran == ["first"]
    assert host.idle_deadline_runs == 1

    host.set_busy(False)
    host.clock.advance(0)
    assert ran == ["first", "second"]
    assert host.idle_pending == 0


def test_cancelled_idle_request_never_runs():
    host = make_host()
    ran = []
    handle = host.request_idle(lambda: ran.append("x"), 100)
    host.cancel_idle(handle)
    host.clock.advance(500)
    assert ran == []
    assert host.clock.pending == 0


def test_describe_reports_layout_and_container_depth():
    host = make_host()
    article, button = build_post()
    host.document.body.append(article)
    loose = SimElement("button", {"data-testid": "tweet-text-show-more-link"}, "Show more")
    host.document.body.append(loose)

    state = asyncio.run(host.describe(button, tweet_signature()))
    loose_state = asyncio.run(host.describe(loose, tweet_signature()))

    assert state.connected and state.width == 80.0 and state.height == 20.0
    assert state.container_depth == 1
    assert state.marker == "tweet-text-show-more-link"
    assert loose_state.container_depth is None

    article.set_style(display="none")
    hidden = asyncio.run(host.describe(button, tweet_signature()))
    assert hidden.display == "none"
    assert hidden.width == 0.0


def test_connect_fails_without_observer_support():
    host = make_host()
    host.observers_available = False
    with pytest.raises(SubscriptionSetupFailed):
        asyncio.run(host.connect())


def test_selectors_with_combinators_match_like_a_browser():
    host = make_host()
    article, button = build_post()
    host.document.body.append(article)
    host.document.body.append(SimElement("button", {"data-testid": SHOW_MORE_TESTID}, "Show more"))
    batches = []

    async def scenario():
        await host.observe_mutations(batches.append, ['article > button', 'aside button'])
        late_article, _late_button = build_post(y=300.0)
        host.document.body.append(late_article)
        await pump(host.clock, 10)
        return await host.query_all(f'article button[data-testid="{SHOW_MORE_TESTID}"]')

    found = asyncio.run(scenario())

    assert found[0] is button
    assert len(found) == 2
    assert batches[0][0].added_nodes[0].matched == frozenset({'article > button'})


def test_container_selectors_see_the_whole_ancestry():
    host = make_host()
    feed = SimElement("section", {"aria-label": "Timeline"})
    article, button = build_post()
    feed.append(article)
    host.document.body.append(feed)
    signature = tweet_signature(container_selectors=('section[aria-label="Timeline"] > article',))

    state = asyncio.run(host.describe(button, signature))

    assert state.container_depth == 1


def test_invalid_selectors_raise():
    host = make_host()
    with pytest.raises(SelectorError):
        asyncio.run(host.query_all("button["))
    with pytest.raises(SelectorError):
        asyncio.run(host.observe_mutations(lambda records: None, ["article", "div >"]))
