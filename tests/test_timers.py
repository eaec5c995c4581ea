from feed_expander.hosts.simulated import VirtualClock
from feed_expander.pipeline.timers import Debouncer, IntervalTimer


def make_debouncer(clock, fired, delay_ms=300):
    return Debouncer(delay_ms, lambda: fired.append(clock.now_ms), after=clock.after, after_cancel=clock.cancel)


def test_burst_of_signals_fires_once_after_quiet_period():
    clock = VirtualClock()
    fired = []
    debouncer = make_debouncer(clock, fired)

    for _ in range(4):
        debouncer.signal()
        clock.advance(100)
    assert fired == []

    clock.advance(200)
    assert fired == [600]
    assert debouncer.signals == 4
    assert debouncer.fired == 1
    assert not debouncer.pending


def test_separate_bursts_fire_separately():
    clock = VirtualClock()
    fired = []
    debouncer = make_debouncer(clock, fired)

    debouncer.signal()
    clock.advance(300)
    debouncer.signal()
    clock.advance(300)

    assert fired == [300, 600]


def test_cancelled_debounce_never_fires():
    clock = VirtualClock()
    fired = []
    debouncer = make_debouncer(clock, fired)

    debouncer.signal()
    debouncer.cancel()
    clock.advance(1000)

    assert fired == []
    assert clock.pending == 0


def test_interval_timer_reschedules_after_failures():
    clock = VirtualClock()
    ticks = []

    def tick():
        ticks.append(clock.now_ms)
        if len(ticks) == 1:
            raise RuntimeError("boom")

    timer = IntervalTimer(3000, tick, after=clock.after, after_cancel=clock.cancel)
    timer.start()
    timer.start()
    clock.advance(9000)

    assert ticks == [3000, 6000, 9000]

    timer.stop()
    clock.advance(9000)
    assert ticks == [3000, 6000, 9000]
    assert not timer.running
    assert clock.pending == 0
