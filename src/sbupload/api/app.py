"""
Upload HTTP application (aiohttp).

Routes:
    GET    /health
    POST   /upload/{project}/{version}              archive (+ optional coverage)
    GET    /upload/{project}/{version}              archive availability
    POST   /upload/{project}/{version}/coverage     attach coverage to the version's build
    POST   /presigned-url/{project}/{version}/{filename}
    DELETE /cleanup/{project}/{version}             requires X-Test-Cleanup: true

Build tracking is secondary to artifact storage: once the archive is
stored, a metadata failure is logged and the upload still answers 201,
just without buildId/buildNumber.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, Optional, Tuple

from aiohttp import hdrs, web

from .auth import API_KEY_STORE, BACKGROUND_TASKS, REQUIRE_API_KEY, api_key_middleware
from ..apikeys.base import ApiKeyStore
from ..blob.base import KEY_SEGMENT_PATTERN, BlobStore
from ..config import ServerConfig
from ..core.coverage import CoverageInput, decode_coverage_json, parse_coverage_input
from ..core.errors import CoverageValidationError, InvalidParameterError, SBUploadError
from ..core.types import CreateBuildData, format_timestamp, utc_now
from ..metadata.base import BuildMetadataStore

logger = logging.getLogger(__name__)


PROJECT_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

ARCHIVE_FILENAME = "storybook.zip"
COVERAGE_FILENAME = "coverage-report.json"
DEFAULT_PRESIGN_CONTENT_TYPE = "application/octet-stream"
READ_CHUNK_SIZE = 64 * 1024

BLOB_STORE = web.AppKey("blob_store", BlobStore)
METADATA_STORE = web.AppKey("metadata_store", BuildMetadataStore)
SERVER_CONFIG = web.AppKey("server_config", ServerConfig)


class PayloadTooLarge(Exception):
    pass


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def _too_large(limit: int) -> web.Response:
    return _error(413, f"File too large. Maximum size is {limit / (1024 * 1024):g}MB")


def _route_params(request: web.Request) -> Tuple[str, str]:
    project = request.match_info["project"]
    version = request.match_info["version"]

    if not PROJECT_PATTERN.match(project):
        raise InvalidParameterError(
            "Project name must contain only alphanumeric characters, hyphens, and underscores",
            parameter="project",
        )
    if not version.strip() or version in (".", "..") or not KEY_SEGMENT_PATTERN.match(version):
        raise InvalidParameterError(f"Invalid version: {version!r}", parameter="version")
    return project, version


def _metadata_store(request: web.Request) -> Optional[BuildMetadataStore]:
    return request.app.get(METADATA_STORE)


def _limit(request: web.Request) -> int:
    return request.app[SERVER_CONFIG].max_upload_bytes


async def _read_stream(stream, limit: int) -> bytes:
    buf = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)
        if len(buf) > limit:
            raise PayloadTooLarge()


async def _read_part(part, limit: int) -> bytes:
    buf = bytearray()
    while True:
        chunk = await part.read_chunk(READ_CHUNK_SIZE)
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)
        if len(buf) > limit:
            raise PayloadTooLarge()


async def _read_form(request: web.Request, limit: int) -> Dict[str, Tuple[bytes, Optional[str]]]:
    """Multipart body as {field name: (bytes, content type)}."""
    fields: Dict[str, Tuple[bytes, Optional[str]]] = {}
    reader = await request.multipart()
    while True:
        part = await reader.next()
        if part is None:
            return fields
        if part.name:
            fields[part.name] = (await _read_part(part, limit), part.headers.get(hdrs.CONTENT_TYPE))


async def _track_build(
    store: Optional[BuildMetadataStore],
    project: str,
    data: CreateBuildData,
) -> Dict[str, Any]:
    """Create the build record. Failures are logged, never raised."""
    if store is None:
        return {}
    try:
        build = await store.create_build(project, data)
    except Exception as e:
        logger.error(
            f"Build tracking failed for {project}/{data.version_id} after artifact upload: {e}",
            exc_info=True,
        )
        return {}
    return {"buildId": build.id, "buildNumber": build.build_number}


# ------------------------------------------------------------
# Middleware
# ------------------------------------------------------------

@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except CoverageValidationError as e:
        return web.json_response(e.to_json(), status=e.http_status)
    except SBUploadError as e:
        logger.warning(f"{request.method} {request.path}: {e.message} [{e.fingerprint}]")
        return web.json_response(e.to_json(), status=e.http_status)
    except PayloadTooLarge:
        return _too_large(_limit(request))
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return _error(500, f"Request failed: {e}")


# ------------------------------------------------------------
# Handlers
# ------------------------------------------------------------

async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "timestamp": format_timestamp(utc_now())})


async def upload(request: web.Request) -> web.Response:
    project, version = _route_params(request)
    limit = _limit(request)

    if request.content_length is not None and request.content_length > limit:
        return _too_large(limit)

    coverage_raw: Optional[bytes] = None

    if request.content_type.startswith("multipart/"):
        form = await _read_form(request, limit)
        body, content_type = form.get("file", (b"", None))
        if not body:
            return _error(400, "No file provided or empty file")
        if "coverage" in form and form["coverage"][0]:
            coverage_raw = form["coverage"][0]
        elif "coverageJson" in form and form["coverageJson"][0]:
            coverage_raw = form["coverageJson"][0]
    else:
        body = await _read_stream(request.content, limit)
        if not body:
            return _error(400, "No file data received")
        content_type = request.headers.get(hdrs.CONTENT_TYPE)

    # Coverage is validated before anything is stored.
    coverage_input: Optional[CoverageInput] = None
    if coverage_raw is not None:
        coverage_input = parse_coverage_input(decode_coverage_json(coverage_raw))

    blob: BlobStore = request.app[BLOB_STORE]
    key = f"{project}/{version}/{ARCHIVE_FILENAME}"
    result = await blob.upload(key, body, content_type or "application/zip")
    data = result.to_dict()

    coverage = None
    if coverage_input is not None:
        stored = await blob.upload(
            f"{project}/{version}/{COVERAGE_FILENAME}",
            coverage_raw,
            "application/json",
        )
        coverage = coverage_input.normalize(stored.url)
        data["coverageUrl"] = stored.url

    data.update(await _track_build(
        _metadata_store(request),
        project,
        CreateBuildData(version_id=version, zip_url=result.url, coverage=coverage),
    ))

    logger.info(f"Uploaded {key} ({len(body)} bytes)")
    return web.json_response(
        {"success": True, "message": "Upload successful", "key": key, "data": data},
        status=201,
    )


async def upload_info(request: web.Request) -> web.Response:
    project, version = _route_params(request)
    key = f"{project}/{version}/{ARCHIVE_FILENAME}"
    available = await request.app[BLOB_STORE].exists(key)
    return web.json_response({
        "project": project,
        "version": version,
        "key": key,
        "available": available,
    })


async def upload_coverage(request: web.Request) -> web.Response:
    project, version = _route_params(request)

    store = _metadata_store(request)
    if store is None:
        return _error(500, "Build metadata tracking is not configured")

    build = await store.get_build_by_version(project, version)
    if build is None:
        return _error(404, f"No build found for {project}/{version}")

    limit = _limit(request)
    if request.content_length is not None and request.content_length > limit:
        return _too_large(limit)

    if request.content_type.startswith("multipart/"):
        form = await _read_form(request, limit)
        raw = form.get("file", (b"", None))[0]
        if not raw:
            return _error(400, "No coverage file provided")
    else:
        raw = await _read_stream(request.content, limit)

    coverage_input = parse_coverage_input(decode_coverage_json(raw))

    stored = await request.app[BLOB_STORE].upload(
        f"{project}/{version}/{COVERAGE_FILENAME}",
        raw,
        "application/json",
    )
    coverage = coverage_input.normalize(stored.url)
    await store.update_build_coverage(project, build.id, coverage)

    logger.info(f"Attached coverage to build #{build.build_number} of {project}")
    return web.json_response(
        {
            "success": True,
            "message": "Coverage uploaded successfully",
            "buildId": build.id,
            "buildNumber": build.build_number,
            "coverageUrl": stored.url,
            "coverage": coverage.to_dict(),
        },
        status=201,
    )


async def presigned_url(request: web.Request) -> web.Response:
    project, version = _route_params(request)
    filename = request.match_info["filename"]
    if filename in (".", "..") or not KEY_SEGMENT_PATTERN.match(filename):
        raise InvalidParameterError(f"Invalid filename: {filename!r}", parameter="filename")

    content_type = DEFAULT_PRESIGN_CONTENT_TYPE
    try:
        body = await request.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("contentType"), str) and body["contentType"]:
        content_type = body["contentType"]

    key = f"{project}/{version}/{filename}"
    presigned = await request.app[BLOB_STORE].get_presigned_upload_url(key, content_type)

    response: Dict[str, Any] = {"url": presigned.url, "fields": {"key": presigned.key}}

    if filename.endswith(".zip"):
        response.update(await _track_build(
            _metadata_store(request),
            project,
            CreateBuildData(version_id=version, zip_url=presigned.object_url),
        ))

    return web.json_response(response)


async def cleanup(request: web.Request) -> web.Response:
    if request.headers.get("X-Test-Cleanup") != "true":
        return _error(401, "Unauthorized cleanup request")

    project, version = _route_params(request)
    deleted = await request.app[BLOB_STORE].delete_by_prefix(f"{project}/{version}/")
    return web.json_response({"message": "Cleanup completed", "deleted": deleted})


# ------------------------------------------------------------
# Application
# ------------------------------------------------------------

async def _close_stores(app: web.Application) -> None:
    # Pending last-used updates still hold the key store
    pending = app.get(BACKGROUND_TASKS)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    for key in (METADATA_STORE, API_KEY_STORE, BLOB_STORE):
        store = app.get(key)
        if store is not None:
            await store.close()


def create_app(
    blob_store: BlobStore,
    metadata_store: Optional[BuildMetadataStore] = None,
    api_key_store: Optional[ApiKeyStore] = None,
    server_config: Optional[ServerConfig] = None,
) -> web.Application:
    server_config = server_config or ServerConfig()

    app = web.Application(
        middlewares=[error_middleware, api_key_middleware],
        # Streaming readers enforce max_upload_bytes; this only bounds request.json()
        client_max_size=server_config.max_upload_bytes + 1024 * 1024,
    )

    app[BLOB_STORE] = blob_store
    app[SERVER_CONFIG] = server_config
    app[REQUIRE_API_KEY] = server_config.api_keys_required(api_key_store is not None)
    app[BACKGROUND_TASKS] = set()
    if metadata_store is not None:
        app[METADATA_STORE] = metadata_store
    if api_key_store is not None:
        app[API_KEY_STORE] = api_key_store

    app.router.add_get("/health", health)
    app.router.add_post("/upload/{project}/{version}", upload)
    app.router.add_get("/upload/{project}/{version}", upload_info)
    app.router.add_post("/upload/{project}/{version}/coverage", upload_coverage)
    app.router.add_post("/presigned-url/{project}/{version}/{filename}", presigned_url)
    app.router.add_delete("/cleanup/{project}/{version}", cleanup)

    app.on_cleanup.append(_close_stores)

    if metadata_store is None:
        logger.warning("No metadata store configured; uploads will not be tracked")

    return app


__all__ = ["create_app", "BLOB_STORE", "METADATA_STORE", "SERVER_CONFIG"]
