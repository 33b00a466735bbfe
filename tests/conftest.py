import os
import sqlite3
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

import app.models  # noqa: E402,F401
from app.models.tenant import Tenant  # noqa: E402
from app.schemas.billing import PlanCreate, PlanLimitCreate  # noqa: E402
from app.services import billing as billing_service  # noqa: E402
from tests.mocks import FakeGateway  # noqa: E402


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):
            # pysqlite only supports SAVEPOINT when SQLAlchemy emits BEGIN itself
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_sqlite(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    # Services commit and roll back freely; each test still runs inside one
    # outer transaction that is discarded at teardown.
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


def _unique_email() -> str:
    return f"owner-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def make_tenant(db_session):
    def _make(name: str = "Warung Sejahtera") -> Tenant:
        tenant = Tenant(
            business_name=name,
            business_email=_unique_email(),
            business_phone="+628123456789",
            business_address="Jl. Merdeka 10, Bandung",
        )
        db_session.add(tenant)
        db_session.commit()
        db_session.refresh(tenant)
        return tenant

    return _make


@pytest.fixture()
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture()
def make_plan(db_session):
    def _make(name: str = "Basic", price: str = "100000.00", limits: list[dict] | None = None, **fields):
        return billing_service.plans.create(
            db_session,
            PlanCreate(
                name=name,
                price=Decimal(price),
                limits=[PlanLimitCreate(**limit) for limit in limits or []],
                **fields,
            ),
        )

    return _make


@pytest.fixture()
def plan(make_plan):
    return make_plan(
        "Basic",
        "100000.00",
        limits=[
            {"metric_name": "transactions", "max_value": Decimal("1000"), "unit": "count"},
            {"metric_name": "products", "max_value": Decimal("-1"), "unit": "count"},
        ],
    )


@pytest.fixture()
def subscription(db_session, tenant, plan):
    """Active subscription; its initial period is already invoiced."""
    return billing_service.subscriptions.create_subscription(db_session, str(tenant.id), str(plan.id))


@pytest.fixture()
def invoice(subscription):
    return subscription.billing_cycles[0].invoice


@pytest.fixture()
def fake_gateway(monkeypatch):
    gateway = FakeGateway()
    monkeypatch.setattr(
        "app.services.billing.providers.get_gateway", lambda provider: gateway
    )
    return gateway
