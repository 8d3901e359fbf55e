import asyncio

from sqlalchemy.ext.asyncio import create_async_engine
from app.database import Base
from app.config import DATABASE_URL
import app.models  # noqa: F401  (registers tables with Base.metadata)


async def init_db():
    engine = create_async_engine(DATABASE_URL, echo=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
