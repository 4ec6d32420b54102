import os
import unittest
from unittest import mock

from spotpool.config import load_config, validate_config
from spotpool.exceptions import ConfigurationError


class TestLoadConfig(unittest.TestCase):

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        config = validate_config(load_config())

        self.assertEqual(config.instance_type, 'm1.xlarge')
        self.assertEqual(config.spot_price, 0.2)
        self.assertEqual((config.min_workers, config.max_workers), (0, 50))
        self.assertEqual((config.period, config.evaluation_periods), (60, 5))
        self.assertEqual((config.visible_threshold, config.empty_receive_threshold), (0, 10))
        self.assertEqual((config.scale_up_cooldown, config.scale_down_cooldown), (60, 60))
        self.assertEqual(config.visibility_timeout, 1800)
        self.assertEqual(config.message_retention, 345600)
        self.assertEqual(config.delay_seconds, 15)
        self.assertEqual((config.rolling_batch_size, config.rolling_min_in_service, config.rolling_pause_time),
                         (10, 0, 0))
        self.assertEqual(config.group_name, 'spotpool-workers')
        self.assertEqual(config.queue_name, 'spotpool-input')
        self.assertIsNone(config.key_name)
        self.assertTrue(config.enable_alarms)

    @mock.patch.dict(os.environ, {'STACK_NAME': 'analysis', 'MAX_WORKERS': '20', 'ENABLE_ALARMS': 'no'},
                     clear=True)
    def test_environment(self):
        config = load_config()

        self.assertEqual(config.max_workers, 20)
        self.assertEqual(config.group_name, 'analysis-workers')
        self.assertEqual(config.results_bucket, 'analysis-results')
        self.assertEqual(config.iam_path, '/analysis/')
        self.assertFalse(config.enable_alarms)

    @mock.patch.dict(os.environ, {'MAX_WORKERS': '20', 'MIN_WORKERS': '3'}, clear=True)
    def test_overrides_win(self):
        config = load_config({'max_workers': 5, 'min_workers': 0, 'region': None})

        self.assertEqual(config.max_workers, 5)
        self.assertEqual(config.min_workers, 0)
        self.assertEqual(config.region, 'us-east-1')

    @mock.patch.dict(os.environ, {'SPOT_PRICE': 'cheap'}, clear=True)
    def test_unparsable_number(self):
        with self.assertRaises(ConfigurationError):
            load_config()


class TestValidateConfig(unittest.TestCase):

    def setUp(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            self.config = load_config()

    def assertInvalid(self, **changes):
        with self.assertRaises(ConfigurationError):
            validate_config(self.config._replace(**changes))

    def test_min_above_max(self):
        self.assertInvalid(min_workers=5, max_workers=4)

    def test_zero_max_is_allowed(self):
        self.assertEqual(validate_config(self.config._replace(max_workers=0)).max_workers, 0)

    def test_invalid_values(self):
        self.assertInvalid(instance_type='t2.micro')
        self.assertInvalid(spot_price=0)
        self.assertInvalid(max_workers=-1)
        self.assertInvalid(evaluation_periods=0)
        self.assertInvalid(period=0)
        self.assertInvalid(empty_receive_threshold=-1)
        self.assertInvalid(visibility_timeout=50000)
        self.assertInvalid(rolling_batch_size=0)
        self.assertInvalid(rolling_min_in_service=51)
        self.assertInvalid(request_timeout=0)
        self.assertInvalid(image_id='')


if __name__ == '__main__':
    unittest.main()
