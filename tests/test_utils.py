import threading
import time

import pytest

from exceptions import InsufficientBalance, ValidationError
from models import BalanceSource, TASK_SOURCES, User, WithdrawalStatus, balance_field
from utils import KeyedLock, generate_referral_code, is_mpesa_method, normalize_msisdn, validate_msisdn


class TestPhoneNumbers:

    @pytest.mark.parametrize("raw", [
        "0712345678", "712345678", "254712345678", "+254712345678", "+254 712-345-678", "0112345678",
    ])
    def test_normalize(self, raw):
        assert validate_msisdn(normalize_msisdn(raw))

    def test_normalize_keeps_digits(self):
        assert normalize_msisdn("0712345678") == "254712345678"
        assert normalize_msisdn("0112345678") == "254112345678"

    @pytest.mark.parametrize("raw", ["", None, "12345", "07123456789", "2547123456789"])
    def test_rejects(self, raw):
        with pytest.raises(ValidationError):
            normalize_msisdn(raw)

    @pytest.mark.parametrize("method,expected", [
        ("M-Pesa", True), ("mpesa", True), ("MPESA", True), ("Bank", False), ("", False), (None, False),
    ])
    def test_mpesa_method(self, method, expected):
        assert is_mpesa_method(method) is expected


class TestReferralCodes:

    def test_skips_taken_codes(self):
        taken = iter([True, True, False])
        code = generate_referral_code(lambda c: next(taken))
        assert len(code) == 6
        assert code.isalnum() and code == code.upper()


class TestBalanceSource:

    def test_every_source_has_a_column(self):
        """Each category maps to a distinct User column."""
        fields = {balance_field(source) for source in BalanceSource}
        assert len(fields) == len(BalanceSource)
        for field in fields:
            assert hasattr(User, field)

    def test_referral_maps_to_general_balance(self):
        assert balance_field(BalanceSource.REFERRAL) == "account_balance"
        assert balance_field("Ad") == "ad_balance"

    def test_task_sources_exclude_referral(self):
        assert BalanceSource.REFERRAL not in TASK_SOURCES
        assert len(TASK_SOURCES) == 4

    def test_unknown_source(self):
        with pytest.raises(ValidationError):
            BalanceSource.parse("bonus")


class TestStatuses:

    def test_terminal_withdrawal_states(self):
        assert WithdrawalStatus.COMPLETED.is_terminal
        assert WithdrawalStatus.FAILED.is_terminal
        assert not WithdrawalStatus.PENDING.is_terminal
        assert not WithdrawalStatus.PROCESSING.is_terminal


class TestErrors:

    def test_insufficient_balance_message(self):
        error = InsufficientBalance(500, 1000)
        assert error.message == "Insufficient balance. Available: 500 Sh, Requested: 1000 Sh"
        assert error.status_code == 400
        assert not error.retryable

    def test_default_message_from_docstring(self):
        assert ValidationError().message == "Invalid request data"


class TestKeyedLock:

    def test_serializes_same_key(self):
        locks = KeyedLock()
        inside = []
        overlap = []

        def worker():
            with locks.hold(7):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not overlap
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        with locks.hold(1):
            acquired = threading.Event()

            def other():
                with locks.hold(2):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(timeout=1)
            t.join()

    def test_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
