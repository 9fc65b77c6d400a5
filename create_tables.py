"""
Script to create all database tables.

Creates every table registered on the declarative base. Handy for local
development; production schemas go through the Alembic migration.
"""
import asyncio
import sys

from chatrelay.database import engine
from chatrelay.models.base import Base

# Import all models to register them with Base
from chatrelay.models.user import User  # noqa: F401
from chatrelay.models.session import SessionRecord  # noqa: F401
from chatrelay.models.message import Message  # noqa: F401
from chatrelay.models.snapshot import Chat, Contact, Group  # noqa: F401
from chatrelay.models.webhook import Webhook, WebhookDelivery  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main(reset: bool = False):
    """Main entry point. Pass --reset to drop everything first."""
    if reset:
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main(reset="--reset" in sys.argv))
