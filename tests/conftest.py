import os

# Settings are read at import time; fill required values before importing vpnshop.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-token")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ["CB_STORAGE"] = "memory"
os.environ["UPSTREAM_RETRY_BACKOFF_SECONDS"] = "0"

from datetime import datetime, timedelta, timezone  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import vpnshop.models  # noqa: E402,F401
from vpnshop.db.base import Base  # noqa: E402
from vpnshop.models.plan import Plan  # noqa: E402
from vpnshop.models.promo_code import PromoCode  # noqa: E402
from vpnshop.models.service import Service  # noqa: E402
from vpnshop.models.user import User  # noqa: E402
from vpnshop.services.circuit_breaker import gateway_breaker, panel_breaker  # noqa: E402
from vpnshop.services.panel.client import PanelAccount  # noqa: E402


@pytest.fixture(autouse=True)
def _closed_breakers():
    panel_breaker.close()
    gateway_breaker.close()
    yield
    panel_breaker.close()
    gateway_breaker.close()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(telegram_id: str | None = None, wallet_balance: int = 0, **kwargs) -> User:
        user = User(
            telegram_id=telegram_id or str(uuid4().int)[:9],
            wallet_balance=wallet_balance,
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_plan(db):
    def _make(price_tomans: int = 130_000, traffic_gb: int = 50, duration_days: int = 30, **kwargs) -> Plan:
        plan = Plan(
            name=kwargs.pop("name", f"plan-{uuid4().hex[:6]}"),
            display_name="Monthly",
            traffic_gb=traffic_gb,
            duration_days=duration_days,
            price_tomans=price_tomans,
            **kwargs,
        )
        db.add(plan)
        db.commit()
        db.refresh(plan)
        return plan

    return _make


@pytest.fixture
def make_promo(db):
    def _make(code: str = "50OFF", uses_left: int = 1, **kwargs) -> PromoCode:
        promo = PromoCode(code=code, uses_left=uses_left, **kwargs)
        db.add(promo)
        db.commit()
        db.refresh(promo)
        return promo

    return _make


@pytest.fixture
def make_service(db):
    def _make(user: User, plan: Plan | None = None, expire_at: datetime | None = None, **kwargs) -> Service:
        account_id = kwargs.pop("remote_account_id", str(uuid4()))
        service = Service(
            user_id=user.id,
            plan_id=plan.id if plan else None,
            name=kwargs.pop("name", "home"),
            remote_username=kwargs.pop("remote_username", f"tg_{user.telegram_id}-{uuid4().hex[:8]}"),
            remote_account_id=account_id,
            traffic_limit_bytes=kwargs.pop("traffic_limit_bytes", 50 * 1024 ** 3),
            expire_at=expire_at or datetime.now(timezone.utc) + timedelta(days=10),
            **kwargs,
        )
        db.add(service)
        db.commit()
        db.refresh(service)
        return service

    return _make


def _panel_account(**kwargs) -> PanelAccount:
    return PanelAccount(
        uuid=str(uuid4()),
        shortUuid="short",
        username=kwargs.get("username"),
        trafficLimitBytes=kwargs.get("traffic_limit_bytes", 0),
        expireAt=kwargs.get("expire_at"),
        subscriptionUrl="https://sub.example.com/short",
    )


@pytest.fixture
def panel():
    client = MagicMock()
    client.create_account.side_effect = _panel_account
    client.update_account.side_effect = lambda *a, **kw: _panel_account()
    client.get_subscription_link.return_value = "https://sub.example.com/short"
    return client


@pytest.fixture
def hosted():
    return MagicMock()


@pytest.fixture
def delivery():
    return MagicMock()


@pytest.fixture
def orchestrator(db, panel, hosted, delivery):
    from vpnshop.services.payments.orchestrator import PaymentOrchestrator

    return PaymentOrchestrator(db, panel=panel, hosted_client=hosted, delivery=delivery)
