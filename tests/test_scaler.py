import unittest

from spotpool.metrics.window import Sample, SampleWindow
from spotpool.scaler import ScalingAction, decide, in_cooldown


def make_windows(samples, size=5):
    """Fill a visible and an empty-receive window with (visible, empty) pairs, one per minute."""
    visible_window = SampleWindow(size, name='visible_messages')
    empty_window = SampleWindow(size, name='empty_receives')
    for i, (visible, empty) in enumerate(samples):
        sample = Sample(timestamp=1000.0 + 60 * i, visible_messages=visible, empty_receives=empty)
        visible_window.push(sample)
        empty_window.push(sample)
    return visible_window, empty_window


class TestDecide(unittest.TestCase):
    """Tests for the scaling decision over sample windows."""

    def test_partial_window_is_no_op(self):
        """Nothing happens before the windows have filled, however large the backlog."""
        for count in range(5):
            visible_window, empty_window = make_windows([(100, 100)] * count)
            self.assertEqual(decide(visible_window, empty_window), ScalingAction.NO_OP)

    def test_single_visible_message_in_full_window_scales_up(self):
        """A backlog anywhere in the window is enough to scale up (sum 1 > 0)."""
        visible_window, empty_window = make_windows([(0, 0), (0, 0), (0, 0), (0, 0), (1, 0)])

        self.assertEqual(decide(visible_window, empty_window), ScalingAction.SCALE_UP)

    def test_scale_up_wins_over_scale_down(self):
        """Backlog takes priority when the queue also looks idle."""
        visible_window, empty_window = make_windows([(1, 50)] * 5)

        self.assertEqual(decide(visible_window, empty_window), ScalingAction.SCALE_UP)

    def test_empty_receives_above_threshold_scale_down(self):
        """Idle polling over the whole window scales down."""
        visible_window, empty_window = make_windows([(0, 3), (0, 3), (0, 3), (0, 2), (0, 0)])

        self.assertEqual(decide(visible_window, empty_window), ScalingAction.SCALE_DOWN)

    def test_empty_receives_at_threshold_is_no_op(self):
        """The empty-receive threshold is strict: a sum of exactly 10 does nothing."""
        visible_window, empty_window = make_windows([(0, 2)] * 5)

        self.assertEqual(decide(visible_window, empty_window), ScalingAction.NO_OP)

    def test_custom_thresholds(self):
        visible_window, empty_window = make_windows([(2, 0)] * 5)

        self.assertEqual(decide(visible_window, empty_window, visible_threshold=10), ScalingAction.NO_OP)
        self.assertEqual(decide(visible_window, empty_window, visible_threshold=9), ScalingAction.SCALE_UP)

    def test_same_windows_same_action(self):
        visible_window, empty_window = make_windows([(0, 4)] * 5)

        actions = {decide(visible_window, empty_window) for _ in range(3)}
        self.assertEqual(actions, {ScalingAction.SCALE_DOWN})

    def test_only_latest_samples_count(self):
        """Old backlog that slid out of the window no longer scales up."""
        visible_window, empty_window = make_windows([(5, 0)] + [(0, 0)] * 5)

        self.assertEqual(len(visible_window), 5)
        self.assertEqual(decide(visible_window, empty_window), ScalingAction.NO_OP)


class TestCooldown(unittest.TestCase):
    """Tests for the per-direction cooldown check."""

    def test_never_scaled_is_not_in_cooldown(self):
        self.assertFalse(in_cooldown('up', None, now=1000.0, cooldown=60))

    def test_within_cooldown(self):
        self.assertTrue(in_cooldown('down', 1000.0, now=1010.0, cooldown=60))

    def test_cooldown_elapsed(self):
        self.assertFalse(in_cooldown('down', 1000.0, now=1060.0, cooldown=60))

    def test_action_values(self):
        self.assertEqual(ScalingAction.SCALE_UP.value, 1)
        self.assertEqual(ScalingAction.SCALE_DOWN.value, -1)
        self.assertIsNone(ScalingAction.NO_OP.direction)


if __name__ == '__main__':
    unittest.main()
