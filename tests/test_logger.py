import os
import tempfile
import unittest
from utils.logger import setup_logger, cycle_context, shutdown_logging

class TestLogger(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_file = os.path.join(self.tmp.name, "logs", "engine.log")

    def tearDown(self):
        shutdown_logging(self.log_file)
        self.tmp.cleanup()

    def read_log(self):
        shutdown_logging(self.log_file)
        with open(self.log_file, encoding="utf-8") as f:
            return f.read()

    def test_cycle_label_is_stamped(self):
        logger = setup_logger("test_cycle_label", log_file=self.log_file)
        logger.info("outside")
        with cycle_context("cycle@1699999200000"):
            logger.info("inside")
        logger.info("after")

        lines = self.read_log().splitlines()
        self.assertEqual(len(lines), 3)
        self.assertIn("test_cycle_label [-]: outside", lines[0])
        self.assertIn("[cycle@1699999200000]: inside", lines[1])
        self.assertIn("[-]: after", lines[2])

    def test_handlers_are_not_duplicated(self):
        first = setup_logger("test_no_duplicates", log_file=self.log_file)
        second = setup_logger("test_no_duplicates", log_file=self.log_file)
        self.assertIs(first, second)
        self.assertEqual(len(first.handlers), 1)

    def test_level_filters_records(self):
        logger = setup_logger("test_level_filter", log_file=self.log_file, level="WARNING")
        logger.info("dropped")
        logger.warning("kept")
        content = self.read_log()
        self.assertNotIn("dropped", content)
        self.assertIn("kept", content)

if __name__ == '__main__':
    unittest.main()
