import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from stackpilot.env_file import env_with_header, format_env_value, parse_env_content, sanitize_env_scalar, update_env_content


class TestEnvFile(unittest.TestCase):
    def test_parse_skips_comments_and_strips_quotes(self) -> None:
        content = '# header\n\nA=1\nB="two words"\nC=\'x=y\'\nnot a line\n=novalue\n'
        self.assertEqual(parse_env_content(content), {"A": "1", "B": "two words", "C": "x=y"})

    def test_sanitize_drops_newlines(self) -> None:
        self.assertEqual(sanitize_env_scalar(" abc\r\ndef "), "abcdef")
        self.assertEqual(sanitize_env_scalar(None), "")

    def test_update_preserves_unmanaged_lines(self) -> None:
        current = "# keep me\nA=1\nOTHER=x\n"
        updated = update_env_content(current, {"A": "2", "B": "3"})
        self.assertEqual(updated, "# keep me\nA=2\nOTHER=x\nB=3\n")

    def test_update_none_removes_key(self) -> None:
        updated = update_env_content("A=1\nB=2\n", {"A": None})
        self.assertEqual(updated, "B=2\n")

    def test_update_to_empty(self) -> None:
        self.assertEqual(update_env_content("A=1\n", {"A": None}), "")

    def test_update_is_idempotent(self) -> None:
        once = update_env_content("", {"TOKEN": "abc"})
        twice = update_env_content(once, {"TOKEN": "abc"})
        self.assertEqual(once, twice)

    def test_quoted_values_round_trip(self) -> None:
        for value in ("'abc'", '"abc"', '""', "'x=y'", "plain"):
            written = update_env_content("", {"TOKEN": value})
            self.assertEqual(parse_env_content(written), {"TOKEN": value}, value)
        self.assertEqual(format_env_value("'abc'"), "\"'abc'\"")
        self.assertEqual(format_env_value("it's"), "it's")

    def test_env_with_header(self) -> None:
        out = env_with_header("# Generated", [("A", "1"), ("B", "multi\nline")])
        self.assertEqual(out, "# Generated\nA=1\nB=multiline\n")


if __name__ == "__main__":
    unittest.main()
