"""Remote admin API access."""

from storeauth.client.api import AdminApiClient
from storeauth.client.base import AdminApi

__all__ = ["AdminApi", "AdminApiClient"]
