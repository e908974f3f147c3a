"""
Tests for receipt parsing.
"""

from zap_checkout.domain.receipts import parse_receipt
from zap_checkout.infrastructure.bolt11 import Bolt11Decoder


# BOLT-11 example invoice: 2500u = 250,000 sats
COFFEE_INVOICE = (
    "lnbc2500u1pvjluezpp5qqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqypqdq5xysxxatsyp3k7enxv4jsxqzpu"
    "aztrnwngzn3kdzw5hydlzf03qdgm2hdq27cqv3agm2awhz5se903vruatfhq77w3ls4evs3ch9zw97j25emudupq63nyw24cg27h2rspfj9srp"
)


class TestParseReceipt:

    def test_complete_receipt(self, receipt_factory, decoder):
        info = parse_receipt(receipt_factory("ab" * 32, 21_000), decoder)

        assert info.complete
        assert info.amount_msat == 21_000
        assert info.amount_sats == 21
        assert info.bolt11 == "lnstub21000"

    def test_missing_bolt11(self, receipt_factory, decoder):
        info = parse_receipt(receipt_factory("ab" * 32), decoder)

        assert not info.complete
        assert info.reason == "missing_bolt11"
        assert info.amount_sats is None

    def test_invoice_without_amount(self, receipt_factory, decoder):
        info = parse_receipt(receipt_factory("ab" * 32, bolt11="lnstub"), decoder)

        assert not info.complete
        assert info.reason == "missing_amount"

    def test_undecodable_invoice(self, receipt_factory, decoder):
        info = parse_receipt(receipt_factory("ab" * 32, bolt11="nonsense"), decoder)

        assert not info.complete
        assert info.reason == "undecodable"

    def test_with_real_decoder(self, receipt_factory):
        receipt = receipt_factory("ab" * 32, bolt11=COFFEE_INVOICE)

        info = parse_receipt(receipt, Bolt11Decoder())

        assert info.complete
        assert info.amount_msat == 250_000_000
        assert info.amount_sats == 250_000
