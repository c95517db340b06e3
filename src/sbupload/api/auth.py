"""
X-API-Key authentication middleware.

Responses (JSON, {"error", "message"}):
    401  missing header / malformed key / unknown, revoked or expired key
    403  key belongs to another project than the route's {project}

Successful checks record lastUsedAt in the background; a failure there is
logged and never affects the request.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Set

from aiohttp import web

from ..apikeys.base import ApiKeyStore
from ..apikeys.utils import extract_project_id

logger = logging.getLogger(__name__)


API_KEY_HEADER = "X-API-Key"
PROTECTED_PREFIXES = ("/upload/", "/presigned-url/")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

API_KEY_STORE = web.AppKey("api_key_store", ApiKeyStore)
REQUIRE_API_KEY = web.AppKey("require_api_key", bool)
BACKGROUND_TASKS = web.AppKey("background_tasks", set)
AUTHENTICATED_KEY = "authenticated_api_key"


def _auth_error(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


def _track_usage(app: web.Application, store: ApiKeyStore, project_id: str, key_id: str) -> None:
    tasks: Set[asyncio.Task] = app[BACKGROUND_TASKS]

    async def update() -> None:
        try:
            await store.update_last_used(project_id, key_id)
        except Exception as e:
            logger.error(f"Failed to update lastUsedAt for key {key_id}: {e}")

    task = asyncio.create_task(update())
    tasks.add(task)
    task.add_done_callback(tasks.discard)


def is_protected(request: web.Request) -> bool:
    return request.path.startswith(PROTECTED_PREFIXES)


@web.middleware
async def api_key_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    store = request.app.get(API_KEY_STORE)

    if not is_protected(request) or not request.app.get(REQUIRE_API_KEY, False):
        return await handler(request)

    if store is None:
        logger.warning("API key required but no key store configured, skipping authentication")
        return await handler(request)

    raw_key = request.headers.get(API_KEY_HEADER)
    if not raw_key:
        return _auth_error(401, "Authentication required", f"Missing {API_KEY_HEADER} header")

    key_project = extract_project_id(raw_key)
    if not key_project:
        return _auth_error(401, "Invalid API key format", "The provided API key has an invalid format")

    route_project = request.match_info.get("project")
    if route_project and route_project != key_project:
        return _auth_error(403, "Project mismatch", "The API key does not belong to the requested project")

    project_id = route_project or key_project
    result = await store.validate_api_key(project_id, raw_key)
    if not result.valid:
        return _auth_error(
            401,
            "Invalid API key",
            result.error or "The provided API key is invalid or has been revoked",
        )

    request[AUTHENTICATED_KEY] = result.api_key
    _track_usage(request.app, store, project_id, result.api_key.id)
    return await handler(request)


__all__ = [
    "API_KEY_HEADER",
    "API_KEY_STORE",
    "REQUIRE_API_KEY",
    "BACKGROUND_TASKS",
    "AUTHENTICATED_KEY",
    "api_key_middleware",
]
