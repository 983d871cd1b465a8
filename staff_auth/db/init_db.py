import asyncio
import logging
import uuid

from staff_auth.core.logging import configure_logging
from staff_auth.core.security import get_password_hash
from staff_auth.core.settings import Settings, get_settings
from staff_auth.db.base import Base
from staff_auth.db.session import build_engine, build_session_factory
from staff_auth.storage.records import IdentityRecord
from staff_auth.storage.sql import SqlAlchemyAuthStore
from staff_auth import models  # noqa: F401

logger = logging.getLogger(__name__)


async def init_db(settings: Settings | None = None) -> None:
    """
    Create the auth tables and seed the database with an administrator identity.
    """
    settings = settings or get_settings()
    engine = build_engine(settings)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        store = SqlAlchemyAuthStore(build_session_factory(settings, engine))
        async with store.transaction() as repo:
            existing = await repo.get_identity_by_email(settings.seed_admin_email)
            if existing:
                logger.info("Admin identity already exists.")
                return
            await repo.add_identity(
                IdentityRecord(
                    id=uuid.uuid4(),
                    tenant_id=settings.seed_admin_tenant_id,
                    email=settings.seed_admin_email,
                    hashed_password=get_password_hash(settings.seed_admin_password, settings=settings),
                    role="ADMIN",
                    must_change_password=True,
                )
            )
        logger.info("Admin identity created.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(init_db())
