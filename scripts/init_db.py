#!/usr/bin/env python3
"""Create the job history and load-test profile tables."""

import asyncio
import sys
sys.path.insert(0, "backend")

from config import settings
from database import init_db


async def main():
    print(f"Initializing database at {settings.database_url.split('@')[-1]}...")
    await init_db()
    print("Tables ready: jobs, load_test_profiles")


if __name__ == "__main__":
    asyncio.run(main())
