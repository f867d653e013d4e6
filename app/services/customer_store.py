"""
Customer Store - persistence boundary for CustomerInfo.

The reconciler treats this as an opaque key-value interface keyed by
application user id.
"""

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.models import Customer
from app.models.customer_info import CustomerInfo

logger = get_logger(__name__)


class CustomerStore(Protocol):
    """Narrow interface the reconciler needs from storage."""

    async def get_by_app_user_id(self, app_user_id: str) -> CustomerInfo | None: ...

    async def upsert(self, app_user_id: str, customer_info: CustomerInfo) -> CustomerInfo: ...


class InMemoryCustomerStore:
    """Process-local store for development and tests."""

    def __init__(self, customers: dict[str, CustomerInfo] | None = None) -> None:
        self._customers: dict[str, dict] = {
            app_user_id: info.to_json() for app_user_id, info in (customers or {}).items()
        }

    async def get_by_app_user_id(self, app_user_id: str) -> CustomerInfo | None:
        stored = self._customers.get(app_user_id)
        if stored is None:
            return None
        return CustomerInfo.model_validate(stored)

    async def upsert(self, app_user_id: str, customer_info: CustomerInfo) -> CustomerInfo:
        self._customers[app_user_id] = customer_info.to_json()
        return CustomerInfo.model_validate(self._customers[app_user_id])


class SQLCustomerStore:
    """PostgreSQL-backed store; one JSONB row per customer."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_by_app_user_id(self, app_user_id: str) -> CustomerInfo | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Customer).where(Customer.app_user_id == app_user_id)
            )
            customer = result.scalar_one_or_none()
            if customer is None:
                return None
            return CustomerInfo.model_validate(customer.customer_info)

    async def upsert(self, app_user_id: str, customer_info: CustomerInfo) -> CustomerInfo:
        payload = customer_info.to_json()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Customer).where(Customer.app_user_id == app_user_id).with_for_update()
            )
            customer = result.scalar_one_or_none()
            if customer is None:
                customer = Customer(app_user_id=app_user_id, customer_info=payload)
                session.add(customer)
            else:
                customer.customer_info = payload
            await session.commit()

        logger.info(
            "customer_info_persisted",
            app_user_id=app_user_id,
            active_subscriptions=len(customer_info.active_subscriptions),
        )
        return CustomerInfo.model_validate(payload)
