from decimal import Decimal

from django.test import SimpleTestCase

from core.utils.iban import clean_iban, mask_iban, validate_iban
from core.utils.money import (
    compute_fee_breakdown,
    from_minor_units,
    parse_amount,
    to_minor_units,
)


class MinorUnitsTests(SimpleTestCase):

    def test_two_decimal_currency(self):
        self.assertEqual(to_minor_units(Decimal('52.00'), 'EUR'), 5200)
        self.assertEqual(to_minor_units(Decimal('0.01'), 'eur'), 1)

    def test_half_up_rounding(self):
        self.assertEqual(to_minor_units(Decimal('10.005'), 'EUR'), 1001)
        self.assertEqual(to_minor_units(Decimal('10.004'), 'EUR'), 1000)

    def test_zero_decimal_currency(self):
        self.assertEqual(to_minor_units(Decimal('1500'), 'JPY'), 1500)
        self.assertEqual(from_minor_units(1500, 'JPY'), Decimal('1500'))

    def test_from_minor_units(self):
        self.assertEqual(from_minor_units(5200, 'EUR'), Decimal('52.00'))

    def test_parse_amount(self):
        self.assertEqual(parse_amount('12.50'), Decimal('12.50'))
        self.assertEqual(parse_amount(3), Decimal('3'))
        self.assertIsNone(parse_amount('abc'))
        self.assertIsNone(parse_amount(''))
        self.assertIsNone(parse_amount(None))
        self.assertIsNone(parse_amount(True))
        self.assertIsNone(parse_amount('NaN'))


class FeeBreakdownTests(SimpleTestCase):

    def test_total_is_budget_plus_service_fee(self):
        b = compute_fee_breakdown(Decimal('50'), Decimal('2'), 'eur', commission_percent=Decimal('10'))
        self.assertEqual(b.currency, 'EUR')
        self.assertEqual(b.total_charge, Decimal('52.00'))
        self.assertEqual(b.total_charge_minor, 5200)
        self.assertEqual(b.helper_commission, Decimal('5.00'))
        self.assertEqual(b.platform_fee, Decimal('7.00'))
        self.assertEqual(b.helper_amount, Decimal('45.00'))

    def test_total_minor_is_sum_of_parts(self):
        b = compute_fee_breakdown(Decimal('19.99'), Decimal('1.99'), 'EUR')
        self.assertEqual(
            b.total_charge_minor,
            to_minor_units(b.base_amount, 'EUR') + to_minor_units(b.service_fee, 'EUR'),
        )
        self.assertEqual(b.total_charge_minor, 2198)

    def test_odd_cent_budget(self):
        b = compute_fee_breakdown(Decimal('49.99'), Decimal('2.00'), 'EUR')
        self.assertEqual(b.total_charge, Decimal('51.99'))
        self.assertEqual(b.total_charge_minor, 5199)

    def test_hundred_euro_budget(self):
        b = compute_fee_breakdown(Decimal('100.00'), Decimal('2.00'), 'EUR')
        self.assertEqual(b.total_charge_minor, 10200)

    def test_as_dict_uses_strings(self):
        data = compute_fee_breakdown(Decimal('50'), Decimal('2'), 'EUR').as_dict()
        self.assertEqual(data['totalCharge'], '52.00')
        self.assertEqual(data['serviceFee'], '2.00')
        self.assertEqual(data['helperCommission'], '0.00')


class IbanTests(SimpleTestCase):

    def test_clean_and_validate(self):
        iban = clean_iban(' pt50 0002 0123 1234 5678 9015 4 ')
        self.assertEqual(iban, 'PT50000201231234567890154')
        self.assertTrue(validate_iban(iban))

    def test_rejects_wrong_length_for_country(self):
        self.assertFalse(validate_iban('PT5000020123123456789015'))

    def test_rejects_garbage(self):
        self.assertFalse(validate_iban('not-an-iban'))
        self.assertFalse(validate_iban(''))

    def test_mask_keeps_last_four(self):
        self.assertTrue(mask_iban('DE89370400440532013000').endswith('3000'))
        self.assertNotIn('370400', mask_iban('DE89370400440532013000'))
