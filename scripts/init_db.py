"""Initialize database tables."""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import settings
from app.database import init_db


async def init():
    """Create all tables."""
    print(f"Creating database tables in {settings.DATABASE_URL.split('@')[-1]}...")
    await init_db()
    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(init())
