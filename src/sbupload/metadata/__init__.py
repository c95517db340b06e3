"""Build metadata stores and per-project build numbering."""

from .base import BuildMetadataStore, DEFAULT_LIST_LIMIT, build_path, counter_path
from .schema import SCHEMA_SQL, SCHEMA_VERSION
from .sqlite import SQLiteMetadataStore
from .credentials import AccessTokenCache, ServiceAccountCredentials
from .rest import FirestoreRestClient
from .firestore import FirestoreRestMetadataStore

__all__ = [
    "BuildMetadataStore",
    "DEFAULT_LIST_LIMIT",
    "build_path",
    "counter_path",
    "SCHEMA_SQL",
    "SCHEMA_VERSION",
    "SQLiteMetadataStore",
    "AccessTokenCache",
    "ServiceAccountCredentials",
    "FirestoreRestClient",
    "FirestoreRestMetadataStore",
]
