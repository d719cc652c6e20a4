import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


class Config:
    # Environment
    FLASK_ENV = os.getenv('FLASK_ENV', 'development')

    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///workspaces.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    PERMANENT_SESSION_LIFETIME = timedelta(minutes=30)

    # Identity provider: the upstream proxy puts the authenticated principal id here
    PRINCIPAL_HEADER = os.getenv('PRINCIPAL_HEADER', 'X-Principal-Id')

    # New workspaces start trialing when > 0
    TRIAL_DAYS = int(os.getenv('TRIAL_DAYS', 0))

    # Billing provider webhook secrets
    PADDLE_WEBHOOK_SECRET = os.getenv('PADDLE_WEBHOOK_SECRET')
    STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET')
    FONDY_MERCHANT_PASSWORD = os.getenv('FONDY_MERCHANT_PASSWORD')
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv('WEBHOOK_TOLERANCE_SECONDS', 300))

    # Provider plan/price id -> internal tier
    BILLING_PLAN_TIERS = {
        'pri_starter_monthly': 'starter',
        'pri_pro_monthly': 'pro',
        'pri_enterprise_annual': 'enterprise',
    }


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SECRET_KEY = 'test-secret'
    TRIAL_DAYS = 0
    PADDLE_WEBHOOK_SECRET = 'paddle-test-secret'
    STRIPE_WEBHOOK_SECRET = 'stripe-test-secret'
    FONDY_MERCHANT_PASSWORD = 'fondy-test-password'
