"""In-memory stand-in for the parts of aiodocker the registry package uses."""

import json
from collections import namedtuple
from typing import Optional

import aiodocker

Message = namedtuple("Message", ["stream", "data"])


def not_found(what: str) -> aiodocker.exceptions.DockerError:
    return aiodocker.exceptions.DockerError(404, {"message": f"No such {what}"})


class FakeExec:
    def __init__(self, container: "FakeContainer", cmd: list[str]):
        self.container = container
        self.cmd = cmd

    def start(self, detach: bool = False):
        return FakeStream(self.container.exec_stderr)

    async def inspect(self) -> dict:
        return {"ExitCode": self.container.exec_exit_code}


class FakeStream:
    def __init__(self, stderr: bytes):
        self._messages = [Message(2, stderr)] if stderr else []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def read_out(self) -> Optional[Message]:
        if self._messages:
            return self._messages.pop(0)
        return None


class FakeContainer:
    def __init__(self, docker: "FakeDocker", name: str, config: dict):
        self.docker = docker
        self.id = f"{name}-id"
        self.name = name
        self.config = config
        self.running = False
        self.networks: dict[str, dict] = {}
        self.execs: list[list[str]] = []
        self.exec_exit_code = 0
        self.exec_stderr = b""

    @property
    def labels(self) -> dict:
        return self.config.get("Labels") or {}

    def _ports(self) -> list[dict]:
        bindings = self.config.get("HostConfig", {}).get("PortBindings") or {}
        ports = []
        for key, entries in bindings.items():
            for entry in entries:
                ports.append(
                    {
                        "PrivatePort": int(key.split("/")[0]),
                        "PublicPort": int(entry["HostPort"]),
                        "IP": entry.get("HostIp", ""),
                        "Type": "tcp",
                    }
                )
        return ports

    def __getitem__(self, key: str):
        return {
            "Id": self.id,
            "Names": [f"/{self.name}"],
            "Labels": self.labels,
            "State": "running" if self.running else "exited",
            "Ports": self._ports() if self.running else [],
        }[key]

    async def start(self) -> None:
        self.docker.calls.append(("start", self.name))
        if self.docker.fail_start.get(self.name):
            raise self.docker.fail_start[self.name]
        self.running = True

    async def stop(self) -> None:
        self.docker.calls.append(("stop", self.name))
        self.running = False

    async def delete(self, force: bool = False) -> None:
        self.docker.calls.append(("delete", self.name))
        self.docker.containers.remove(self)

    async def show(self) -> dict:
        mounts = [
            {
                "Type": mount["Type"],
                "Name": mount["Source"],
                "Destination": mount["Target"],
            }
            for mount in self.config.get("HostConfig", {}).get("Mounts") or []
        ]
        return {
            "Id": self.id,
            "Name": f"/{self.name}",
            "State": {"Running": self.running},
            "Mounts": mounts,
            "NetworkSettings": {
                "Networks": dict(self.networks),
                "Ports": self.config.get("HostConfig", {}).get("PortBindings") or {},
            },
        }

    async def exec(self, cmd: list[str], stdout: bool = True, stderr: bool = True):
        self.execs.append(cmd)
        return FakeExec(self, cmd)


class FakeContainers:
    def __init__(self, docker: "FakeDocker"):
        self.docker = docker
        self.items: list[FakeContainer] = []

    def add(self, name: str, labels: Optional[dict] = None, running: bool = True):
        container = FakeContainer(self.docker, name, {"Labels": labels or {}})
        container.running = running
        self.items.append(container)
        return container

    def remove(self, container: FakeContainer) -> None:
        self.items.remove(container)

    async def list(self, **params):
        filters = params.get("filters")
        include_stopped = params.get("all", False)
        self.docker.calls.append(("list", filters))
        if self.docker.fail_list is not None:
            raise self.docker.fail_list
        selectors = json.loads(filters).get("label", []) if filters else []
        matched = []
        for container in self.items:
            if not include_stopped and not container.running:
                continue
            if all(_matches(container.labels, s) for s in selectors):
                matched.append(container)
        return matched

    async def create(self, config: dict, name: str) -> FakeContainer:
        self.docker.calls.append(("create", name))
        if self.docker.fail_create.get(name):
            raise self.docker.fail_create[name]
        container = FakeContainer(self.docker, name, config)
        self.items.append(container)
        return container

    async def get(self, name: str) -> FakeContainer:
        for container in self.items:
            if name in (container.name, container.id):
                return container
        raise not_found(f"container: {name}")


def _matches(labels: dict, selector: str) -> bool:
    key, _, value = selector.partition("=")
    return key in labels and labels[key] == value


class FakeImages:
    def __init__(self, docker: "FakeDocker"):
        self.docker = docker
        self.present: set[str] = set()

    async def inspect(self, name: str) -> dict:
        self.docker.calls.append(("image_inspect", name))
        if name not in self.present:
            raise not_found(f"image: {name}")
        return {"Id": f"sha256:{name}"}

    async def pull(self, name: str) -> None:
        self.docker.calls.append(("image_pull", name))
        self.present.add(name)


class FakeVolume:
    def __init__(self, volumes: "FakeVolumes", name: str):
        self.volumes = volumes
        self.name = name

    async def delete(self) -> None:
        self.volumes.names.discard(self.name)


class FakeVolumes:
    def __init__(self, docker: "FakeDocker"):
        self.docker = docker
        self.names: set[str] = set()

    async def get(self, name: str) -> FakeVolume:
        if name not in self.names:
            raise not_found(f"volume: {name}")
        return FakeVolume(self, name)

    async def create(self, config: dict) -> FakeVolume:
        self.docker.calls.append(("volume_create", config["Name"]))
        self.names.add(config["Name"])
        return FakeVolume(self, config["Name"])


class FakeNetwork:
    def __init__(self, docker: "FakeDocker", name: str, config: dict):
        self.docker = docker
        self.name = name
        self.config = config

    async def connect(self, config: dict) -> None:
        self.docker.calls.append(("connect", config["Container"], self.name))
        container = await self.docker.containers.get(config["Container"])
        container.networks[self.name] = config.get("EndpointConfig") or {}

    async def disconnect(self, config: dict) -> None:
        self.docker.calls.append(("disconnect", config["Container"], self.name))
        container = await self.docker.containers.get(config["Container"])
        container.networks.pop(self.name, None)


class FakeNetworks:
    def __init__(self, docker: "FakeDocker"):
        self.docker = docker
        self.items: dict[str, FakeNetwork] = {}

    async def get(self, name: str) -> FakeNetwork:
        if name not in self.items:
            raise not_found(f"network: {name}")
        return self.items[name]

    async def create(self, config: dict) -> FakeNetwork:
        self.docker.calls.append(("network_create", config["Name"]))
        network = FakeNetwork(self.docker, config["Name"], config)
        self.items[config["Name"]] = network
        return network


class FakeDocker:
    def __init__(self):
        self.calls: list[tuple] = []
        self.fail_create: dict[str, Exception] = {}
        self.fail_start: dict[str, Exception] = {}
        self.fail_list: Optional[Exception] = None
        self.containers = FakeContainers(self)
        self.images = FakeImages(self)
        self.volumes = FakeVolumes(self)
        self.networks = FakeNetworks(self)

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]
