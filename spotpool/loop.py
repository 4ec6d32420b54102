import logging
import math
import threading
import time
from typing import Callable, NamedTuple, Optional

from spotpool.exceptions import ProvisioningFailure
from spotpool.fleet.controller import AppliedDelta, FleetController
from spotpool.metrics.cloudwatch import MetricSampler
from spotpool.metrics.window import Sample, SampleWindow
from spotpool.scaler import ScalingAction, decide


class TickResult(NamedTuple):
    sample: Sample
    action: ScalingAction
    applied: Optional[AppliedDelta]
    error: Optional[str] = None


class AlarmLoop:
    """
    Fixed-period control loop: sample -> windows -> decide -> apply.

    The loop is the only writer of the sample windows and, through the
    controller, of the worker group's capacity and cooldown state. Ticks run one
    at a time on the calling thread. A tick that overruns its period makes the
    loop skip the ticks it missed instead of running them back to back.
    """

    def __init__(self, sampler: MetricSampler, controller: FleetController, period: int = 60,
                 evaluation_periods: int = 5, visible_threshold: int = 0, empty_receive_threshold: int = 10,
                 clock: Callable[[], float] = time.time, monotonic: Callable[[], float] = time.monotonic):
        self.sampler = sampler
        self.controller = controller
        self.period = period
        self.visible_threshold = visible_threshold
        self.empty_receive_threshold = empty_receive_threshold
        self.visible_window = SampleWindow(evaluation_periods, name='visible_messages')
        self.empty_window = SampleWindow(evaluation_periods, name='empty_receives')
        self.ticks = 0
        self.skipped_ticks = 0
        self._clock = clock
        self._monotonic = monotonic
        self._anchor: Optional[float] = None
        self._slot = 0

    def _scheduled_time(self) -> float:
        """
        Wall-clock time of the period this tick belongs to: the first tick's time,
        in whole seconds, plus a whole number of periods.

        Cooldowns are measured between these times, so a wake-up that lands a few
        milliseconds early or late does not stretch or shorten the gap between
        two actions. Each tick gets a later period than the previous one.
        """
        now = self._clock()
        if self._anchor is None:
            self._anchor = float(math.floor(now))
            return self._anchor

        self._slot = max(round((now - self._anchor) / self.period), self._slot + 1)
        return self._anchor + self._slot * self.period

    def tick(self) -> TickResult:
        self.ticks += 1
        now = self._scheduled_time()
        sample = self.sampler.sample(now)
        self.visible_window.push(sample)
        self.empty_window.push(sample)

        action = decide(self.visible_window, self.empty_window,
                        self.visible_threshold, self.empty_receive_threshold)
        logging.info(f"Tick {self.ticks}: action {action.name}" + (" (stale sample)" if sample.stale else ""),
                     extra={'action': action.name, 'stale': sample.stale})

        try:
            applied = self.controller.apply(action, now)
        except ProvisioningFailure as e:
            # state was not advanced, so the next period retries the same change
            logging.warning(f"Scaling action {action.name} failed, retrying next period: {e}")
            return TickResult(sample, action, None, str(e))

        if applied.delta:
            logging.info(f"Desired capacity changed {applied.previous} -> {applied.current}",
                         extra={'desired_capacity': applied.current})
        return TickResult(sample, action, applied)

    def run(self, stop_event: threading.Event = None, max_ticks: int = None):
        """
        Run ticks every `period` seconds until `stop_event` is set.

        A stop request never interrupts a tick in progress; it only cuts short
        the wait for the next one.

        Args:
            stop_event: Event that ends the loop once set
            max_ticks: Optional number of ticks after which the loop returns
        """
        stop_event = stop_event or threading.Event()
        logging.info(f"Starting control loop: period {self.period}s, window {self.visible_window.size} periods")

        next_tick = self._monotonic()
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logging.error(f"Unexpected error in control loop tick: {e}", exc_info=True)

            if max_ticks is not None and self.ticks >= max_ticks:
                break

            next_tick += self.period
            now = self._monotonic()
            if now > next_tick:
                missed = math.ceil((now - next_tick) / self.period)
                self.skipped_ticks += missed
                next_tick += missed * self.period
                logging.warning(f"Tick overran the {self.period}s period, skipping {missed} tick(s)")

            stop_event.wait(max(0.0, next_tick - now))

        logging.info(f"Control loop stopped after {self.ticks} ticks")
