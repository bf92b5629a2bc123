# ===============================================================================
# ORDER CODE MATCHING TESTS
# ===============================================================================

from django.test import SimpleTestCase

from apps.promotions.matching import order_applies_code


class OrderAppliesCodeTests(SimpleTestCase):
    """order_applies_code"""

    def test_exact_entry(self) -> None:
        self.assertTrue(order_applies_code('SAVE50', ['SAVE50']))

    def test_case_and_whitespace_are_ignored(self) -> None:
        self.assertTrue(order_applies_code('SAVE50', ['  save50 ']))

    def test_comma_delimited_entry(self) -> None:
        self.assertTrue(order_applies_code('SAVE50', ['WELCOME10,SAVE50']))
        self.assertTrue(order_applies_code('SAVE50', ['WELCOME10 , save50 ,']))

    def test_partial_strings_never_match(self) -> None:
        self.assertFalse(order_applies_code('SAVE5', ['SAVE50']))
        self.assertFalse(order_applies_code('SAVE50', ['SAVE500']))
        self.assertFalse(order_applies_code('SAVE50', ['XSAVE50,OTHER']))

    def test_empty_inputs(self) -> None:
        self.assertFalse(order_applies_code('SAVE50', []))
        self.assertFalse(order_applies_code('SAVE50', ['', ' , ']))
        self.assertFalse(order_applies_code('  ', ['SAVE50']))

    def test_non_string_entries_are_skipped(self) -> None:
        self.assertTrue(order_applies_code('SAVE50', [None, 50, 'SAVE50']))  # type: ignore[list-item]
