"""
Tests for the customer stores.

The SQL store runs against a mocked AsyncSession; no database is needed.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import TEST_APP_USER_ID

from app.db.models import Customer
from app.models.customer_info import CustomerInfo, EntitlementInfo
from app.services.customer_store import InMemoryCustomerStore, SQLCustomerStore


def _active_info() -> CustomerInfo:
    info = CustomerInfo.new(TEST_APP_USER_ID)
    info.put_entitlement(
        EntitlementInfo(identifier="p1", product_identifier="p1", is_active=True, will_renew=True)
    )
    return info


class TestInMemoryCustomerStore:
    """Tests for InMemoryCustomerStore."""

    @pytest.mark.asyncio
    async def test_unknown_customer_is_none(self):
        store = InMemoryCustomerStore()
        assert await store.get_by_app_user_id("ghost") is None

    @pytest.mark.asyncio
    async def test_upsert_then_get(self):
        store = InMemoryCustomerStore()
        info = _active_info()

        saved = await store.upsert(TEST_APP_USER_ID, info)
        loaded = await store.get_by_app_user_id(TEST_APP_USER_ID)

        assert saved == info
        assert loaded == info
        assert loaded.active_subscriptions == ["p1"]

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        """Mutating a returned aggregate does not change the stored one."""
        store = InMemoryCustomerStore({TEST_APP_USER_ID: _active_info()})

        loaded = await store.get_by_app_user_id(TEST_APP_USER_ID)
        loaded.active_subscriptions.clear()

        again = await store.get_by_app_user_id(TEST_APP_USER_ID)
        assert again.active_subscriptions == ["p1"]

    @pytest.mark.asyncio
    async def test_upsert_replaces(self):
        store = InMemoryCustomerStore({TEST_APP_USER_ID: _active_info()})
        await store.upsert(TEST_APP_USER_ID, CustomerInfo.new(TEST_APP_USER_ID))

        loaded = await store.get_by_app_user_id(TEST_APP_USER_ID)
        assert loaded.active_subscriptions == []


@pytest.fixture
def db_session() -> AsyncMock:
    """Mocked AsyncSession usable as an async context manager."""
    session = AsyncMock()
    session.add = MagicMock()
    session.__aenter__.return_value = session
    session.__aexit__.return_value = None
    return session


@pytest.fixture
def session_factory(db_session: AsyncMock) -> MagicMock:
    return MagicMock(return_value=db_session)


def _result(customer: Customer | None) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = customer
    return result


class TestSQLCustomerStore:
    """Tests for SQLCustomerStore."""

    @pytest.mark.asyncio
    async def test_get_missing(self, session_factory, db_session):
        db_session.execute.return_value = _result(None)
        store = SQLCustomerStore(session_factory)

        assert await store.get_by_app_user_id("ghost") is None
        db_session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_existing(self, session_factory, db_session):
        info = _active_info()
        db_session.execute.return_value = _result(
            Customer(app_user_id=TEST_APP_USER_ID, customer_info=info.to_json())
        )
        store = SQLCustomerStore(session_factory)

        loaded = await store.get_by_app_user_id(TEST_APP_USER_ID)

        assert loaded == info

    @pytest.mark.asyncio
    async def test_upsert_inserts_new_row(self, session_factory, db_session):
        db_session.execute.return_value = _result(None)
        store = SQLCustomerStore(session_factory)
        info = _active_info()

        saved = await store.upsert(TEST_APP_USER_ID, info)

        db_session.add.assert_called_once()
        added = db_session.add.call_args[0][0]
        assert isinstance(added, Customer)
        assert added.app_user_id == TEST_APP_USER_ID
        assert added.customer_info == info.to_json()
        db_session.commit.assert_awaited_once()
        assert saved == info

    @pytest.mark.asyncio
    async def test_upsert_updates_existing_row(self, session_factory, db_session):
        existing = Customer(
            app_user_id=TEST_APP_USER_ID,
            customer_info=CustomerInfo.new(TEST_APP_USER_ID).to_json(),
        )
        db_session.execute.return_value = _result(existing)
        store = SQLCustomerStore(session_factory)
        info = _active_info()

        await store.upsert(TEST_APP_USER_ID, info)

        db_session.add.assert_not_called()
        assert existing.customer_info == info.to_json()
        assert existing.customer_info["activeSubscriptions"] == ["p1"]
        db_session.commit.assert_awaited_once()
