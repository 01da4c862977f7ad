"""Container engine adapters.

The runner only needs four operations from the engine: start a hardened
container publishing the agent port on loopback, inspect it, stop it and
remove it. ``stop`` and ``remove`` are idempotent because every exit path
of a task calls them unconditionally.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import docker
from docker.errors import DockerException, NotFound

from .errors import ContainerError

logger = logging.getLogger("burrow.containers")

MANAGED_LABEL = "burrow.managed"
TASK_LABEL = "burrow.task_id"
INSTANCE_LABEL = "burrow.instance"


@dataclass(slots=True)
class ContainerLimits:
    memory: str = "2g"
    cpus: float = 2.0
    user: str = "1000:1000"
    agent_port: int = 4096
    host_address: str = "127.0.0.1"
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ContainerHandle:
    container_id: str
    port: int


@dataclass(frozen=True, slots=True)
class ContainerState:
    running: bool
    status: str
    port: int | None = None


class ContainerProvider(Protocol):
    async def start(self, image: str, limits: ContainerLimits) -> ContainerHandle: ...

    async def inspect(self, container_id: str) -> ContainerState: ...

    async def stop(self, container_id: str) -> None: ...

    async def remove(self, container_id: str) -> None: ...


def _mapped_port(attrs: Mapping[str, Any], agent_port: int) -> int | None:
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    bindings = ports.get(f"{agent_port}/tcp") or []
    for binding in bindings:
        host_port = binding.get("HostPort")
        if host_port:
            return int(host_port)
    return None


def _is_gone(exc: Exception) -> bool:
    # 404: no such container, 304: already stopped, 409: removal in progress.
    return isinstance(exc, NotFound) or getattr(exc, "status_code", None) in {304, 404, 409}


class DockerContainerProvider:
    """ContainerProvider backed by the Docker Engine API.

    The Docker SDK is blocking, so each call runs in a worker thread.
    """

    def __init__(
        self,
        *,
        client: Any | None = None,
        api_timeout_s: float = 30.0,
        stop_timeout_s: int = 5,
    ) -> None:
        self._client = client
        self._api_timeout_s = api_timeout_s
        self._stop_timeout_s = stop_timeout_s

    def _docker(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=int(self._api_timeout_s))
            except DockerException as exc:
                raise ContainerError(f"Docker engine unavailable: {exc}") from exc
        return self._client

    # Sync helpers ----------------------------------------------------------

    def _start_sync(self, image: str, limits: ContainerLimits) -> ContainerHandle:
        client = self._docker()
        labels = {MANAGED_LABEL: "true", **dict(limits.labels)}
        try:
            container = client.containers.run(
                image,
                detach=True,
                user=limits.user,
                cap_drop=["ALL"],
                security_opt=["no-new-privileges"],
                mem_limit=limits.memory,
                nano_cpus=int(limits.cpus * 1_000_000_000),
                ports={f"{limits.agent_port}/tcp": (limits.host_address, None)},
                labels=labels,
            )
        except Exception as exc:
            raise ContainerError(f"Container start failed: {exc}") from exc

        try:
            container.reload()
            port = _mapped_port(container.attrs, limits.agent_port)
        except Exception as exc:
            port = None
            logger.warning("container_reload_failed", extra={"container_id": container.id, "error": str(exc)})
        if port is None:
            self._discard_sync(container.id)
            raise ContainerError(f"Container {container.id} did not publish port {limits.agent_port}")
        logger.info("container_started", extra={"container_id": container.id, "image": image, "port": port})
        return ContainerHandle(container_id=container.id, port=port)

    def _inspect_sync(self, container_id: str, agent_port: int) -> ContainerState:
        client = self._docker()
        try:
            container = client.containers.get(container_id)
            container.reload()
        except Exception as exc:
            if _is_gone(exc):
                return ContainerState(running=False, status="missing")
            raise ContainerError(f"Container inspect failed: {exc}") from exc
        return ContainerState(
            running=container.status == "running",
            status=container.status,
            port=_mapped_port(container.attrs, agent_port),
        )

    def _stop_sync(self, container_id: str) -> None:
        client = self._docker()
        try:
            client.containers.get(container_id).stop(timeout=self._stop_timeout_s)
        except Exception as exc:
            if _is_gone(exc):
                return
            raise ContainerError(f"Container stop failed: {exc}") from exc

    def _remove_sync(self, container_id: str) -> None:
        client = self._docker()
        try:
            client.containers.get(container_id).remove(force=True)
        except Exception as exc:
            if _is_gone(exc):
                return
            raise ContainerError(f"Container remove failed: {exc}") from exc

    def _discard_sync(self, container_id: str) -> None:
        try:
            self._remove_sync(container_id)
        except ContainerError:
            logger.warning("container_discard_failed", extra={"container_id": container_id}, exc_info=True)

    def _list_managed_sync(self, instance_id: str | None) -> list[str]:
        client = self._docker()
        label_filters = [f"{MANAGED_LABEL}=true"]
        if instance_id is not None:
            label_filters.append(f"{INSTANCE_LABEL}={instance_id}")
        try:
            containers = client.containers.list(all=True, filters={"label": label_filters})
        except Exception as exc:
            raise ContainerError(f"Container listing failed: {exc}") from exc
        return [container.id for container in containers]

    # Async surface ---------------------------------------------------------

    async def start(self, image: str, limits: ContainerLimits) -> ContainerHandle:
        return await asyncio.to_thread(self._start_sync, image, limits)

    async def inspect(self, container_id: str, *, agent_port: int = 4096) -> ContainerState:
        return await asyncio.to_thread(self._inspect_sync, container_id, agent_port)

    async def stop(self, container_id: str) -> None:
        await asyncio.to_thread(self._stop_sync, container_id)

    async def remove(self, container_id: str) -> None:
        await asyncio.to_thread(self._remove_sync, container_id)

    async def list_managed(self, instance_id: str | None = None) -> list[str]:
        """Ids of managed containers, limited to one orchestrator instance when given."""
        return await asyncio.to_thread(self._list_managed_sync, instance_id)


async def sweep_orphans(
    provider: ContainerProvider,
    *,
    keep: Iterable[str] = (),
    instance_id: str | None = None,
) -> list[str]:
    """Stop and remove managed containers that no live runner owns.

    With ``instance_id`` only containers started by that orchestrator instance
    are considered, so servers sharing an engine leave each other alone.
    """
    list_managed = getattr(provider, "list_managed", None)
    if list_managed is None:
        return []
    keep_ids = set(keep)
    swept: list[str] = []
    for container_id in await list_managed(instance_id):
        if container_id in keep_ids:
            continue
        try:
            await provider.stop(container_id)
            await provider.remove(container_id)
        except ContainerError:
            logger.warning("orphan_sweep_failed", extra={"container_id": container_id}, exc_info=True)
            continue
        swept.append(container_id)
    if swept:
        logger.info("orphans_swept", extra={"count": len(swept)})
    return swept


__all__ = [
    "INSTANCE_LABEL",
    "MANAGED_LABEL",
    "TASK_LABEL",
    "ContainerHandle",
    "ContainerLimits",
    "ContainerProvider",
    "ContainerState",
    "DockerContainerProvider",
    "sweep_orphans",
]
