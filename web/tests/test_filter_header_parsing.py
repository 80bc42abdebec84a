import os
import sys
import unittest


def _import_custom_filters_module():
    web_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    if web_dir not in sys.path:
        sys.path.insert(0, web_dir)
    try:
        import adblockparser  # noqa: F401
    except ImportError as e:
        raise unittest.SkipTest(f"adblockparser not available in this environment: {e}")
    from services import custom_filters  # type: ignore
    return custom_filters


LIST_TEXT = """[Adblock Plus 2.0]
! Title: Example List
! Description: Blocks example ads
! Version: 3.0.1
! Homepage: https://lists.example/
! Expires: 4 days
! TimeUpdated: 2024-03-01T10:00:00+0000
! title: ignored duplicate
||ads.example^
@@||ads.example/allowed.js
example.org##.banner

||tracker.example^$third-party
"""


class TestFilterHeaderParsing(unittest.TestCase):

    def test_parse_filter_header(self):
        m = _import_custom_filters_module()

        header = m.parse_filter_header(m.split_rules(LIST_TEXT))

        self.assertEqual(
            header,
            {
                'title': 'Example List',
                'description': 'Blocks example ads',
                'version': '3.0.1',
                'homepage': 'https://lists.example/',
                'expires': '4 days',
                'timeupdated': '2024-03-01T10:00:00+0000',
            },
        )

    def test_parse_filter_header_only_reads_the_top(self):
        m = _import_custom_filters_module()

        lines = ['||a.example^'] * 60 + ['! Title: Too late']
        self.assertEqual(m.parse_filter_header(lines), {})

    def test_count_rules_skips_comments(self):
        m = _import_custom_filters_module()

        self.assertEqual(m.count_rules(m.split_rules(LIST_TEXT)), 4)
        self.assertEqual(m.count_rules(['! only a comment', '[Adblock Plus 2.0]']), 0)

    def test_html_is_not_a_filter_list(self):
        m = _import_custom_filters_module()

        self.assertTrue(m._looks_like_html(['<!DOCTYPE html>', '<html>']))
        self.assertFalse(m._looks_like_html(['<script>', '||a.example^']))
        self.assertFalse(m._looks_like_html(['||a.example^']))


if __name__ == '__main__':
    unittest.main()
