"""
MongoDB Database Connection using MongoEngine
Handles connection and disconnection to MongoDB
"""

import logging

from mongoengine import connect, disconnect

from rikride import config

logger = logging.getLogger(__name__)


def connect_db(host: str = None, **kwargs):
    """
    Connect to MongoDB using MongoEngine
    Uses MONGO_URI from environment variables unless a host is given
    """
    try:
        connect(host=host or config.MONGO_URI, alias="default", **kwargs)
        logger.info("Connected to MongoDB successfully")

    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {str(e)}")
        raise


def disconnect_db():
    """Disconnect from MongoDB"""
    try:
        disconnect(alias="default")
        logger.info("Disconnected from MongoDB")
    except Exception as e:
        logger.error(f"Error disconnecting from MongoDB: {str(e)}")
