"""Initialize database tables and default audit templates"""
import asyncio
from backend.database import engine, Base, AsyncSessionLocal
from backend.models import *  # noqa: F401,F403 - Import all models to register them
from backend.services.template_seeds import seed_default_templates


async def init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Database tables created successfully.")

    async with AsyncSessionLocal() as session:
        added = await seed_default_templates(session)
    print(f"Default audit templates seeded: {added}")


if __name__ == "__main__":
    asyncio.run(init())
