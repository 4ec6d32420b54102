import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from spotpool.metrics.window import SampleWindow


class ScalingAction(Enum):
    """Capacity change requested for one period; the value is the step applied to desired capacity."""
    SCALE_UP = 1
    SCALE_DOWN = -1
    NO_OP = 0

    @property
    def direction(self) -> Optional[str]:
        return {1: 'up', -1: 'down'}.get(self.value)


def decide(
        visible_window: SampleWindow,
        empty_window: SampleWindow,
        visible_threshold=0,
        empty_receive_threshold=10
):
    """
    Map the current sample windows to a scaling action.

    Scale up when the visible-message sum over a full window exceeds
    `visible_threshold`; scale down when the empty-receive sum over a full
    window exceeds `empty_receive_threshold`. Backlog wins over idleness when
    both hold. Nothing happens until the windows have filled.

    Args:
        visible_window: Window of samples for the visible-message metric
        empty_window: Window of samples for the empty-receive metric
        visible_threshold: Scale up when the visible sum is strictly greater than this
        empty_receive_threshold: Scale down when the empty-receive sum is strictly greater than this

    Returns:
        ScalingAction: The action for this period
    """
    if not visible_window.full or not empty_window.full:
        logging.info(f"Collecting samples: visible {len(visible_window)}/{visible_window.size}, "
                     f"empty receives {len(empty_window)}/{empty_window.size}")
        return ScalingAction.NO_OP

    visible_sum = visible_window.total('visible_messages')
    empty_sum = empty_window.total('empty_receives')
    logging.info(f"Window sums - visible: {visible_sum} (threshold {visible_threshold}), "
                 f"empty receives: {empty_sum} (threshold {empty_receive_threshold})")

    if visible_sum > visible_threshold:
        return ScalingAction.SCALE_UP
    if empty_sum > empty_receive_threshold:
        return ScalingAction.SCALE_DOWN
    return ScalingAction.NO_OP


def in_cooldown(action_type, last_time, now, cooldown):
    """
    Check whether a scaling action of the given direction is still cooling down.

    Args:
        action_type: 'up' or 'down'
        last_time: Epoch time of the last applied action in that direction, or None if never
        now: Current epoch time
        cooldown: Cooldown period in seconds

    Returns:
        bool: True while `now - last_time < cooldown`
    """
    if last_time is None:
        return False

    elapsed_time = now - last_time
    if elapsed_time < cooldown:
        last_time_readable = datetime.fromtimestamp(last_time).strftime('%Y-%m-%d %H:%M:%S')
        logging.info(f"In cooldown period for {action_type} scaling. Last action: {last_time_readable}, "
                     f"Remaining: {cooldown - elapsed_time:.2f}s")
        return True

    return False
