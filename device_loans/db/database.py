# device_loans/db/database.py
import logging

import motor.motor_asyncio
from beanie import init_beanie

from device_loans.core.config import MONGODB_URL, DATABASE_NAME
from device_loans.db.store import MongoLoanStore
from device_loans.models.favourite import FavouriteDocument
from device_loans.models.loan import LoanDocument, DeviceClaimDocument

logger = logging.getLogger(__name__)


async def init_db() -> MongoLoanStore:
    """Connect to MongoDB, register the Beanie documents and return the loan store."""
    logger.info("Connecting to MongoDB...")
    client = motor.motor_asyncio.AsyncIOMotorClient(MONGODB_URL, tz_aware=True)

    database = client[DATABASE_NAME]
    logger.info(f"Using database: {DATABASE_NAME}")

    await init_beanie(
        database=database,
        document_models=[
            LoanDocument,
            DeviceClaimDocument,
            FavouriteDocument,
        ],
    )
    logger.info("Beanie initialization complete for all models.")
    return MongoLoanStore()
