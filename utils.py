import re
import secrets
import string
import threading
from contextlib import contextmanager

from exceptions import ValidationError


MSISDN_PATTERN = re.compile(r"^254\d{9}$")
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 6


def is_mpesa_method(payment_method: str) -> bool:
    method = (payment_method or "").lower()
    return "pesa" in method


def clean_phone(phone: str) -> str:
    return re.sub(r"[^0-9]", "", phone or "")


def normalize_msisdn(phone: str) -> str:
    """
    Convert a Kenyan mobile number to the 2547XXXXXXXX form M-Pesa expects.
    Accepts 07.., 7.., 01.., 1.., 254.. and +254.. inputs.
    """
    formatted_phone = clean_phone(phone)
    if not formatted_phone.startswith("254"):
        if formatted_phone.startswith("0"):
            formatted_phone = "254" + formatted_phone[1:]
        elif formatted_phone.startswith(("7", "1")):
            formatted_phone = "254" + formatted_phone

    if len(formatted_phone) != 12:
        raise ValidationError("Invalid phone number format for M-Pesa. Should be 12 digits starting with 254.")
    return formatted_phone


def validate_msisdn(phone: str) -> bool:
    return bool(MSISDN_PATTERN.match(phone or ""))


def generate_referral_code(is_taken, length=REFERRAL_CODE_LENGTH):
    """Return a random code for which ``is_taken(code)`` is false."""
    while True:
        code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))
        if not is_taken(code):
            return code


# ==========================================================
#                  KEYED LOCKS
# ==========================================================
class KeyedLock:
    """
    One mutex per key (user id), created on demand and dropped once nobody
    holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


# check-unactivated / check-no-pending / create-transaction, and callback handling
activation_locks = KeyedLock()
# every read-modify-write of a user's balance counters
balance_locks = KeyedLock()
