# ==========================================================================================================
# -------------- Configuration file for the MoneyQash Flask application -----------------------------------
# ==========================================================================================================
import os
import logging
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))
logger = logging.getLogger(__name__)

DEFAULT_ACTIVATION_FEE = 500


def _activation_fee():
    raw = os.getenv("MPESA_ACTIVATION_FEE")
    if not raw:
        return DEFAULT_ACTIVATION_FEE
    try:
        fee = int(raw)
    except ValueError:
        fee = 0
    if fee <= 0:
        logger.error(f"Invalid MPESA_ACTIVATION_FEE {raw!r}. Using default of {DEFAULT_ACTIVATION_FEE}.")
        return DEFAULT_ACTIVATION_FEE
    return fee


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")
    TESTING = False

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'moneyqash.db')}"

    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # M-Pesa Daraja: STK push (collection)
    MPESA_ENV = os.getenv("MPESA_ENV", "sandbox")
    MPESA_CONSUMER_KEY = os.getenv("MPESA_CONSUMER_KEY")
    MPESA_CONSUMER_SECRET = os.getenv("MPESA_CONSUMER_SECRET")
    MPESA_BUSINESS_SHORT_CODE = os.getenv("MPESA_BUSINESS_SHORT_CODE")
    MPESA_PASS_KEY = os.getenv("MPESA_PASS_KEY")
    MPESA_CALLBACK_URL = os.getenv("MPESA_CALLBACK_URL")
    MPESA_ACCOUNT_REFERENCE = os.getenv("MPESA_ACCOUNT_REFERENCE", "MoneyQash")
    MPESA_TIMEOUT_SECONDS = int(os.getenv("MPESA_TIMEOUT_SECONDS", "30"))

    # M-Pesa Daraja: B2C (disbursement)
    MPESA_B2C_INITIATOR_NAME = os.getenv("MPESA_B2C_INITIATOR_NAME")
    MPESA_B2C_SECURITY_CREDENTIAL = os.getenv("MPESA_B2C_SECURITY_CREDENTIAL")
    MPESA_B2C_COMMAND_ID = os.getenv("MPESA_B2C_COMMAND_ID", "BusinessPayment")
    MPESA_B2C_SHORTCODE = os.getenv("MPESA_B2C_SHORTCODE")
    MPESA_B2C_RESULT_URL = os.getenv("MPESA_B2C_RESULT_URL")
    MPESA_B2C_QUEUE_TIMEOUT_URL = os.getenv("MPESA_B2C_QUEUE_TIMEOUT_URL")

    MPESA_ACTIVATION_FEE = _activation_fee()
    WITHDRAWAL_MIN_AMOUNT = int(os.getenv("WITHDRAWAL_MIN_AMOUNT", "600"))
    WITHDRAWAL_FEE = int(os.getenv("WITHDRAWAL_FEE", "50"))
    RECONCILE_AFTER_MINUTES = int(os.getenv("RECONCILE_AFTER_MINUTES", "30"))

    APP_URL = os.getenv("APP_URL", "http://localhost:5000")


class TestConfig(Config):

    TESTING = True
    FLASK_ENV = "testing"
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}

    MPESA_ENV = "sandbox"
    MPESA_CONSUMER_KEY = "test-consumer-key"
    MPESA_CONSUMER_SECRET = "test-consumer-secret"
    MPESA_BUSINESS_SHORT_CODE = "174379"
    MPESA_PASS_KEY = "test-pass-key"
    MPESA_CALLBACK_URL = "https://example.test/api/mpesa/callback"
    MPESA_ACCOUNT_REFERENCE = "MoneyQash"
    MPESA_TIMEOUT_SECONDS = 5

    MPESA_B2C_INITIATOR_NAME = "testapi"
    MPESA_B2C_SECURITY_CREDENTIAL = "test-security-credential"
    MPESA_B2C_COMMAND_ID = "BusinessPayment"
    MPESA_B2C_SHORTCODE = "600000"
    MPESA_B2C_RESULT_URL = "https://example.test/api/mpesa/b2c/result"
    MPESA_B2C_QUEUE_TIMEOUT_URL = "https://example.test/api/mpesa/b2c/timeout"

    MPESA_ACTIVATION_FEE = 500
    WITHDRAWAL_MIN_AMOUNT = 600
    WITHDRAWAL_FEE = 50
    RECONCILE_AFTER_MINUTES = 30

    APP_URL = "http://localhost:5000"
