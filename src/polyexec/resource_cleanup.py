"""Container cleanup utilities for session lifecycle management.

Cleanup operations that log errors but don't fail.
Used by ContainerOrchestrator for teardown and orphan reaping.
"""

from __future__ import annotations

import asyncio
from typing import Any

import docker.errors

from polyexec._logging import get_logger
from polyexec.constants import CONTAINER_LABEL, KILL_SIGNAL
from polyexec.daemon import DaemonConnection
from polyexec.exceptions import DaemonUnavailableError

logger = get_logger(__name__)

_HTTP_CONFLICT = 409


def _remove(client: Any, container: Any, name: str) -> None:
    target = container if container is not None else client.containers.get(name)
    target.remove(force=True)


async def cleanup_container(
    conn: DaemonConnection,
    container: Any,
    name: str,
    context_id: str,
) -> bool:
    """Force-remove a container (kills it if still running).

    Natural exit (auto-remove) and forced removal race each other, so
    "no such container" and "removal already in progress" are the success
    case here, not errors.

    Never raises (log instead).

    Args:
        conn: Daemon connection
        container: Container handle, or None to look the container up by name
        name: Container name (lookup key and logging)
        context_id: Context for logging (session id)

    Returns:
        True if the container is gone, False if removal could not be confirmed
    """
    try:
        await conn.call("remove", lambda client: _remove(client, container, name), session_id=context_id)
        logger.debug("Container removed", extra={"session_id": context_id, "container_name": name})
        return True

    except docker.errors.NotFound:
        logger.debug("Container already gone", extra={"session_id": context_id, "container_name": name})
        return True

    except docker.errors.APIError as e:
        if e.status_code == _HTTP_CONFLICT:
            logger.debug(
                "Container removal already in progress",
                extra={"session_id": context_id, "container_name": name},
            )
            return True
        logger.error(
            "Container removal rejected by daemon",
            extra={"session_id": context_id, "container_name": name, "status_code": e.status_code, "error": str(e)},
        )
        return False

    except DaemonUnavailableError as e:
        logger.warning(
            "Container removal unconfirmed, daemon unreachable",
            extra={"session_id": context_id, "container_name": name, "error": e.message},
        )
        return False

    except Exception as e:
        # Never raise - log and return failure
        logger.error(
            "Container cleanup error",
            extra={"session_id": context_id, "container_name": name, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def kill_container(conn: DaemonConnection, container: Any, context_id: str) -> bool:
    """Send SIGKILL to a container. Never raises.

    A container that already stopped or vanished counts as killed.
    """
    if container is None:
        return True
    try:
        await conn.call("kill", lambda _client: container.kill(signal=KILL_SIGNAL), session_id=context_id)
        logger.debug("Container killed", extra={"session_id": context_id})
        return True
    except docker.errors.NotFound:
        return True
    except docker.errors.APIError as e:
        # 409: container not running (exited on its own)
        if e.status_code == _HTTP_CONFLICT:
            return True
        logger.warning(
            "Container kill rejected by daemon",
            extra={"session_id": context_id, "status_code": e.status_code, "error": str(e)},
        )
        return False
    except DaemonUnavailableError as e:
        logger.warning("Container kill failed, daemon unreachable", extra={"session_id": context_id, "error": e.message})
        return False


async def cleanup_orphans(conn: DaemonConnection) -> int:
    """Remove every container carrying the polyexec session label.

    Used at engine start-up and shutdown to collect containers left behind
    by crashed processes. Never raises.

    Returns:
        Number of containers confirmed removed
    """
    try:
        containers = await conn.call(
            "list",
            lambda client: client.containers.list(all=True, filters={"label": CONTAINER_LABEL}),
        )
    except (DaemonUnavailableError, docker.errors.APIError) as e:
        logger.warning("Orphan scan failed", extra={"error": str(e), "error_type": type(e).__name__})
        return 0

    if not containers:
        return 0

    results = await asyncio.gather(
        *(
            cleanup_container(
                conn,
                container,
                name=container.name,
                context_id=(container.labels or {}).get(CONTAINER_LABEL, "orphan"),
            )
            for container in containers
        )
    )
    removed = sum(1 for ok in results if ok)
    logger.info("Orphaned containers reaped", extra={"found": len(containers), "removed": removed})
    return removed
