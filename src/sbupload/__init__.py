"""
sbupload - Storybook build archive upload service with sequential build numbering.
"""

__version__ = "0.1.0"

# Lazy imports - keep aiohttp/boto3 off the import path until needed
def __getattr__(name):
    if name == "SQLiteMetadataStore":
        from .metadata.sqlite import SQLiteMetadataStore
        return SQLiteMetadataStore
    elif name == "FirestoreRestMetadataStore":
        from .metadata.firestore import FirestoreRestMetadataStore
        return FirestoreRestMetadataStore
    elif name == "create_app":
        from .api.app import create_app
        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = ["__version__"]
