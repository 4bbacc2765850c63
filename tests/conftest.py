import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PHONEPE_WEBHOOK_USERNAME", "hook-user")
os.environ.setdefault("PHONEPE_WEBHOOK_PASSWORD", "hook-pass")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp-key-secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp-webhook-secret")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tokenapi.config import Settings
from tokenapi.models import Account, Base, Plan, TokenPackage


@pytest.fixture
def engine():
    """인메모리 SQLite (SAVEPOINT가 동작하도록 트랜잭션을 직접 시작)"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_autobegin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        CRON_SECRET="test-cron-secret",
        SECRET_KEY="test-secret-key",
        RENEWAL_CARRYOVER_POLICY="reset",
        REFERRAL_MILESTONES={8: 300, 15: 500, 25: 1000},
        PHONEPE_CLIENT_ID="phonepe-client",
        PHONEPE_CLIENT_SECRET="phonepe-secret",
        PHONEPE_WEBHOOK_USERNAME="hook-user",
        PHONEPE_WEBHOOK_PASSWORD="hook-pass",
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET="rzp-key-secret",
        RAZORPAY_WEBHOOK_SECRET="rzp-webhook-secret",
        FRONTEND_URL="https://app.example.com",
    )


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def plan_factory(db):
    def _create(name="Standard", price="2499", duration_days=95, daily=100, bonus=500, commission="250", is_active=True):
        plan = Plan(
            name=name,
            price=Decimal(price),
            duration_days=duration_days,
            daily_token_quota=daily,
            bonus_token_amount=bonus,
            referral_commission=Decimal(commission),
            is_active=is_active,
        )
        db.add(plan)
        db.commit()
        return plan

    return _create


@pytest.fixture
def package_factory(db):
    def _create(name="Standard Pack", tokens=300, price="399", max_per_day=10):
        package = TokenPackage(
            name=name,
            tokens=tokens,
            price=Decimal(price),
            category="standard",
            max_purchase_per_day=max_per_day,
        )
        db.add(package)
        db.commit()
        return package

    return _create


@pytest.fixture
def account_factory(db):
    """플랜이 주어지면 days_left일 남은 활성 구독 계정을 만듭니다 (음수면 만료)."""

    def _create(email="user@example.com", plan=None, days_left=30, **fields):
        current = datetime.now(timezone.utc)
        account = Account(email=email, name=fields.pop("name", "Test User"), role=fields.pop("role", "user"))
        if plan is not None:
            account.plan_id = plan.id
            account.subscription_start_date = current - timedelta(days=1)
            account.subscription_end_date = current + timedelta(days=days_left)
            account.subscription_is_active = True
            account.daily_token_quota = plan.daily_token_quota
            account.daily_limit = plan.daily_token_quota
        for key, value in fields.items():
            setattr(account, key, value)
        db.add(account)
        db.commit()
        return account

    return _create
