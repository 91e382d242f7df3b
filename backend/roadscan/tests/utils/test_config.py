import logging
import os
import tempfile
import unittest
from pathlib import Path

import roadscan.config as config_module
from roadscan.config import get_current_config, initialize_config, reload_config
from roadscan.utils.config import DEFAULT_CONFIG, ConfigError, load_config, merge_dicts


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.tmp_dir.name) / "config.yaml"

    def tearDown(self):
        self.tmp_dir.cleanup()

    def write(self, text):
        self.config_path.write_text(text)

    def test_missing_file_uses_defaults(self):
        config = load_config(Path(self.tmp_dir.name) / "absent.yaml")
        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertIsNot(config, DEFAULT_CONFIG)

    def test_values_merged_over_defaults(self):
        self.write("segmentation:\n  segment_length_feet: 264\npci:\n  verbose: true\n")
        config = load_config(self.config_path)
        self.assertEqual(config["segmentation"]["segment_length_feet"], 264)
        self.assertEqual(config["segmentation"]["min_speed_mph"], 5.0)
        self.assertTrue(config["pci"]["verbose"])
        self.assertEqual(DEFAULT_CONFIG["segmentation"]["segment_length_feet"], 528.0)

    def test_empty_file(self):
        self.write("")
        self.assertEqual(load_config(self.config_path), DEFAULT_CONFIG)

    def test_invalid_yaml_raises(self):
        self.write("segmentation: [unclosed\n")
        with self.assertRaises(ConfigError):
            load_config(self.config_path)

    def test_non_mapping_raises(self):
        self.write("- just\n- a list\n")
        with self.assertRaises(ConfigError):
            load_config(self.config_path)

    def test_merge_dicts(self):
        merged = merge_dicts({"a": {"b": 2}}, {"a": {"b": 1, "c": 3}, "d": 4})
        self.assertEqual(merged, {"a": {"b": 2, "c": 3}, "d": 4})


class TestConfigHolder(unittest.TestCase):

    def setUp(self):
        self.saved = config_module._config_instance
        config_module._config_instance = None
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.tmp_dir.name, "config.yaml")
        with open(self.config_path, "w") as f:
            f.write("logging:\n  level: WARNING\npath_density:\n  buffer_radius_feet: 40\n")

    def tearDown(self):
        config_module._config_instance = self.saved
        logging.getLogger("roadscan").setLevel(logging.NOTSET)
        self.tmp_dir.cleanup()

    def test_access_before_initialization(self):
        with self.assertRaises(RuntimeError):
            get_current_config()

    def test_initialize_and_get(self):
        config = initialize_config(self.config_path)
        self.assertIs(get_current_config(), config)
        self.assertEqual(config["path_density"]["buffer_radius_feet"], 40)
        # second call keeps the first instance
        self.assertIs(initialize_config(self.config_path), config)

    def test_reload(self):
        first = initialize_config(self.config_path)
        with open(self.config_path, "w") as f:
            f.write("path_density:\n  buffer_radius_feet: 10\n")
        second = reload_config(self.config_path)
        self.assertIsNot(first, second)
        self.assertEqual(second["path_density"]["buffer_radius_feet"], 10)

    def test_bad_file_wrapped_in_runtime_error(self):
        with open(self.config_path, "w") as f:
            f.write("pci: [oops\n")
        with self.assertRaises(RuntimeError):
            initialize_config(self.config_path)
        self.assertIsNone(config_module._config_instance)


if __name__ == '__main__':
    unittest.main()
