from typing import Optional

from pymongo import MongoClient

import config


def get_client(url: Optional[str] = None) -> MongoClient:
    # MongoClient connects lazily; nothing touches the network here
    return MongoClient(url or config.DATABASE_URL, tz_aware=True)


def get_database(client: MongoClient, name: Optional[str] = None):
    return client[name or config.DATABASE_NAME]
