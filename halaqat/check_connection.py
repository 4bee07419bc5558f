"""
Check the MongoDB connection and the dashboard collections.
Run with: python -m halaqat.check_connection
"""
import asyncio

from .config import Settings
from .errors import StoreError
from .store import ACTIVITY_LOGS, DAILY_ATTENDANCE, HALAQAT, MEMORIZATION_LOGS, PARENTS, STUDENTS, TEACHERS, MongoRecordStore

DASHBOARD_COLLECTIONS = [STUDENTS, TEACHERS, HALAQAT, PARENTS, DAILY_ATTENDANCE, MEMORIZATION_LOGS, ACTIVITY_LOGS]


async def check_connection(settings: Settings) -> bool:
    if not settings.mongo_url:
        print("ERROR: MONGO_URL not found in .env file")
        return False

    print(f"Testing connection to: {settings.mongo_url[:50]}...")
    print(f"Database name: {settings.db_name}")

    store = MongoRecordStore.from_url(settings.mongo_url, settings.db_name, settings.index_help_url)
    try:
        await store.ping()
        print("SUCCESS: MongoDB connection successful!")
        if await store.supports_transactions():
            print("Transactions: supported")
        else:
            print("WARNING: standalone server. Attendance, memorization and circle reassignment need a replica set.")
        for name in DASHBOARD_COLLECTIONS:
            docs = await store.collection(name).list_all()
            print(f"  {name}: {len(docs)} documents")
        return True
    except StoreError as e:
        print(f"ERROR: Connection failed ({e.kind.value}): {e}")
        if e.kind.value == "permission-denied":
            print("\nGrant the service user this role in mongosh:\n")
            print(e.remediation)
        else:
            print("\nTroubleshooting tips:")
            print("1. Check your MONGO_URL in .env file")
            print("2. Ensure MongoDB Atlas Network Access allows your IP")
            print("3. Verify username and password are correct")
        return False
    finally:
        store.close()


if __name__ == "__main__":
    asyncio.run(check_connection(Settings.from_env()))
