import pytest
from docker.errors import APIError, NotFound

from burrow.containers import (
    INSTANCE_LABEL,
    MANAGED_LABEL,
    TASK_LABEL,
    ContainerLimits,
    DockerContainerProvider,
    sweep_orphans,
)
from burrow.errors import ContainerError


class FakeContainer:
    def __init__(self, container_id: str, *, host_port: str | None = "49153", labels=None) -> None:
        self.id = container_id
        self.status = "created"
        self.labels = labels or {}
        self.stopped = 0
        self.removed = 0
        bindings = [{"HostIp": "127.0.0.1", "HostPort": host_port}] if host_port else None
        self.attrs = {"NetworkSettings": {"Ports": {"4096/tcp": bindings}}}

    def reload(self) -> None:
        if self.status == "created":
            self.status = "running"

    def stop(self, timeout: int = 10) -> None:
        self.stopped += 1
        self.status = "exited"

    def remove(self, force: bool = False) -> None:
        self.removed += 1


class FakeContainerCollection:
    def __init__(self) -> None:
        self.by_id: dict[str, FakeContainer] = {}
        self.run_kwargs: list[dict] = []
        self.next_port: str | None = "49153"
        self.run_error: Exception | None = None

    def run(self, image: str, **kwargs) -> FakeContainer:
        if self.run_error is not None:
            raise self.run_error
        self.run_kwargs.append({"image": image, **kwargs})
        container = FakeContainer(f"ctr{len(self.by_id) + 1}", host_port=self.next_port, labels=kwargs["labels"])
        self.by_id[container.id] = container
        return container

    def get(self, container_id: str) -> FakeContainer:
        container = self.by_id.get(container_id)
        if container is None or container.removed:
            raise NotFound(f"No such container: {container_id}")
        return container

    def list(self, all: bool = False, filters=None) -> list[FakeContainer]:
        wanted = dict(item.partition("=")[::2] for item in filters["label"])
        return [c for c in self.by_id.values() if not c.removed and wanted.items() <= c.labels.items()]


class FakeDockerClient:
    def __init__(self) -> None:
        self.containers = FakeContainerCollection()


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def provider(docker_client) -> DockerContainerProvider:
    return DockerContainerProvider(client=docker_client)


@pytest.mark.asyncio
async def test_start_runs_hardened_container_on_loopback(provider, docker_client) -> None:
    limits = ContainerLimits(memory="1g", cpus=1.5, user="1000:1000", labels={TASK_LABEL: "t1"})

    handle = await provider.start("example/agent:1", limits)

    assert handle.container_id == "ctr1"
    assert handle.port == 49153
    kwargs = docker_client.containers.run_kwargs[0]
    assert kwargs["image"] == "example/agent:1"
    assert kwargs["detach"] is True
    assert kwargs["cap_drop"] == ["ALL"]
    assert kwargs["security_opt"] == ["no-new-privileges"]
    assert kwargs["user"] == "1000:1000"
    assert kwargs["mem_limit"] == "1g"
    assert kwargs["nano_cpus"] == 1_500_000_000
    assert kwargs["ports"] == {"4096/tcp": ("127.0.0.1", None)}
    assert kwargs["labels"] == {MANAGED_LABEL: "true", TASK_LABEL: "t1"}


@pytest.mark.asyncio
async def test_start_without_published_port_discards_container(provider, docker_client) -> None:
    docker_client.containers.next_port = None

    with pytest.raises(ContainerError, match="did not publish"):
        await provider.start("example/agent:1", ContainerLimits())

    assert docker_client.containers.by_id["ctr1"].removed == 1


@pytest.mark.asyncio
async def test_engine_rejection_becomes_container_error(provider, docker_client) -> None:
    docker_client.containers.run_error = APIError("pull access denied")

    with pytest.raises(ContainerError, match="pull access denied"):
        await provider.start("private/image", ContainerLimits())


@pytest.mark.asyncio
async def test_stop_and_remove_are_idempotent(provider, docker_client) -> None:
    handle = await provider.start("example/agent:1", ContainerLimits())

    await provider.stop(handle.container_id)
    await provider.stop(handle.container_id)
    await provider.remove(handle.container_id)
    await provider.remove(handle.container_id)
    await provider.stop("never-started")
    await provider.remove("never-started")

    container = docker_client.containers.by_id[handle.container_id]
    assert container.stopped == 2
    assert container.removed == 1


@pytest.mark.asyncio
async def test_inspect_reports_state(provider) -> None:
    handle = await provider.start("example/agent:1", ContainerLimits())

    state = await provider.inspect(handle.container_id)
    assert state.running is True
    assert state.port == 49153

    missing = await provider.inspect("never-started")
    assert missing.running is False
    assert missing.status == "missing"


@pytest.mark.asyncio
async def test_sweep_orphans_removes_unowned_managed_containers(provider, docker_client) -> None:
    kept = await provider.start("example/agent:1", ContainerLimits())
    orphan = await provider.start("example/agent:1", ContainerLimits())

    swept = await sweep_orphans(provider, keep=[kept.container_id])

    assert swept == [orphan.container_id]
    assert docker_client.containers.by_id[orphan.container_id].removed == 1
    assert docker_client.containers.by_id[kept.container_id].removed == 0
    assert await provider.list_managed() == [kept.container_id]


@pytest.mark.asyncio
async def test_sweep_scoped_to_instance_leaves_other_servers_alone(provider, docker_client) -> None:
    ours = await provider.start("example/agent:1", ContainerLimits(labels={INSTANCE_LABEL: "blue"}))
    theirs = await provider.start("example/agent:1", ContainerLimits(labels={INSTANCE_LABEL: "green"}))

    swept = await sweep_orphans(provider, instance_id="blue")

    assert swept == [ours.container_id]
    assert docker_client.containers.by_id[theirs.container_id].removed == 0
    assert await provider.list_managed("green") == [theirs.container_id]
