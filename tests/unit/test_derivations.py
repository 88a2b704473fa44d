"""
Tests for the named derivation functions.
"""

import unittest

from legacy_migrator.mapping.derivations import (
    get_derivation,
    is_truthy_flag,
    register_derivation,
    registered_derivations,
)


class TestIsTruthyFlag(unittest.TestCase):

    def test_truthy_values(self):
        for value in (1, '1', 'Y', 'yes', 'True', True, b'\x01', 2.0):
            self.assertTrue(is_truthy_flag(value), value)

    def test_falsy_values(self):
        for value in (None, 0, '0', 'N', '', False, b'\x00', 'maybe'):
            self.assertFalse(is_truthy_flag(value), value)


class TestPaymentStatus(unittest.TestCase):
    """Legacy payment flags collapse to one status."""

    def setUp(self):
        self.derive = get_derivation('payment_status')
        self.columns = ['canceled', 'paid', 'free']

    def test_cancelled_wins(self):
        row = {'canceled': 1, 'paid': 1, 'free': 0}
        self.assertEqual(self.derive(row, self.columns, {}), 'cancelled')

    def test_paid_or_free_is_completed(self):
        self.assertEqual(self.derive({'canceled': 0, 'paid': 1, 'free': 0}, self.columns, {}), 'completed')
        self.assertEqual(self.derive({'canceled': 0, 'paid': 0, 'free': 'Y'}, self.columns, {}), 'completed')

    def test_otherwise_pending(self):
        self.assertEqual(self.derive({'canceled': None, 'paid': 0, 'free': 0}, self.columns, {}), 'pending')

    def test_option_overrides(self):
        options = {'completed_value': 'settled', 'paid_column': 'is_paid'}
        self.assertEqual(self.derive({'is_paid': 1}, self.columns, options), 'settled')


class TestNameAndCountryDerivations(unittest.TestCase):

    def test_full_name(self):
        derive = get_derivation('full_name')
        self.assertEqual(derive({'first_name': ' Jane ', 'last_name': 'Doe'}, ['first_name', 'last_name'], {}),
                         'Jane Doe')
        self.assertEqual(derive({'first_name': None, 'last_name': 'Doe'}, ['first_name', 'last_name'], {}), 'Doe')
        self.assertIsNone(derive({}, ['first_name', 'last_name'], {}))

    def test_first_non_empty(self):
        derive = get_derivation('first_non_empty')
        self.assertEqual(derive({'mobile': '', 'home': '555'}, ['mobile', 'home'], {}), '555')
        self.assertEqual(derive({}, ['mobile'], {'default': 'none'}), 'none')

    def test_country_code(self):
        derive = get_derivation('country_code')
        self.assertEqual(derive({'country': 'United States'}, ['country'], {}), 'USA')
        self.assertEqual(derive({'country': None}, ['country'], {}), 'US')
        self.assertEqual(derive({'country': ' Canada '}, ['country'], {}), 'Canada')


class TestRegistry(unittest.TestCase):

    def test_unknown_derivation(self):
        with self.assertRaises(KeyError):
            get_derivation('does_not_exist')

    def test_register_custom_derivation(self):
        @register_derivation('test_upper_code')
        def upper_code(row, columns, options):
            return str(row[columns[0]]).upper()

        self.assertIn('test_upper_code', registered_derivations())
        self.assertEqual(get_derivation('test_upper_code')({'code': 'ab'}, ['code'], {}), 'AB')

    def test_duplicate_name_rejected(self):
        with self.assertRaises(ValueError):
            @register_derivation('payment_status')
            def other(row, columns, options):
                return None


if __name__ == '__main__':
    unittest.main()
