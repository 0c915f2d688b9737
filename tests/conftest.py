from unittest.mock import MagicMock

import pytest

from app import create_app
from blueprints.payments_helpers import CollectionResult, DisbursementResult, MpesaClient
from config import TestConfig
from extensions import db as _db
from ledger import LedgerStore
from models import BalanceSource


@pytest.fixture
def gateway():
    mock = MagicMock(spec=MpesaClient)
    mock.request_collection.side_effect = _collection_results()
    mock.request_disbursement.return_value = DisbursementResult(
        conversation_id="AG_20240101_0001",
        originator_conversation_id="29115-34620561-1",
        response_code="0",
        response_description="Accept the service request successfully.",
    )
    return mock


def _collection_results():
    n = 0
    while True:
        n += 1
        yield CollectionResult(
            checkout_request_id=f"ws_CO_{n:04d}",
            merchant_request_id=f"29115-{n:04d}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )


@pytest.fixture
def app(gateway):
    app = create_app(TestConfig)
    app.extensions["mpesa"] = gateway
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make_user(username=None, referrer=None, activated=False, **balances):
        counter["n"] += 1
        user = LedgerStore.create_user(
            username=username or f"user{counter['n']}",
            password="secret123",
            full_name="Test User",
            phone="0712345678",
            referral_code=f"CODE{counter['n']:02d}",
            referrer_id=referrer.id if referrer else None,
            is_activated=activated,
            **balances,
        )
        _db.session.commit()
        return user

    return _make_user


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
        return client

    return _login


def stk_callback(checkout_request_id, result_code=0, amount=500, receipt="QKX1234ABC", desc=None):
    callback = {
        "MerchantRequestID": "29115-0001",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": desc or ("The service request is processed successfully." if result_code == 0
                               else "Request cancelled by user"),
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}


def b2c_result(conversation_id="AG_20240101_0001", result_code=0, transaction_id="RKT9XYZ123"):
    return {"Result": {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Declined",
        "OriginatorConversationID": "29115-34620561-1",
        "ConversationID": conversation_id,
        "TransactionID": transaction_id,
    }}


def balance(user, source=BalanceSource.REFERRAL):
    _db.session.refresh(user)
    return user.balance_for(source)
