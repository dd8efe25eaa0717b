import logging
import os
import tempfile
import unittest

from intraday_thesis.logging_setup import configure_logging, parse_level


class TestLoggingSetup(unittest.TestCase):
    def tearDown(self) -> None:
        root = logging.getLogger()
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()

    def test_configure_logging_file_only_no_console(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "logs", "engine.log")
            configure_logging(level="debug", log_file=path, console=False)
            root = logging.getLogger()

            console_handlers = [
                h
                for h in root.handlers
                if isinstance(h, logging.StreamHandler)
                and not isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(console_handlers, [])
            self.assertTrue(any(isinstance(h, logging.FileHandler) for h in root.handlers))
            self.assertEqual(root.level, logging.DEBUG)
            self.assertTrue(os.path.isdir(os.path.join(td, "logs")))
            self.tearDown()

    def test_no_outputs_installs_null_handler(self) -> None:
        configure_logging(console=False)
        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertIsInstance(root.handlers[0], logging.NullHandler)

    def test_parse_level(self) -> None:
        self.assertEqual(parse_level("warning"), logging.WARNING)
        self.assertEqual(parse_level("15"), 15)
        self.assertEqual(parse_level(logging.ERROR), logging.ERROR)
        self.assertEqual(parse_level(None), logging.INFO)
        self.assertEqual(parse_level("nonsense", default=logging.DEBUG), logging.DEBUG)


if __name__ == "__main__":
    unittest.main()
