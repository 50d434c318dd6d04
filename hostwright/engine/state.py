"""Host state snapshots, re-probed before every step."""

import hashlib
import logging
import shlex
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESSES = {"127.0.0.1", "::1", "[::1]", "localhost"}

PACKAGES_CMD = "dpkg-query -W -f='${Package} ${db:Status-Status}\\n'"
CONTAINERS_CMD = "docker ps -a --format '{{.Names}}\\t{{.State}}\\t{{.Ports}}'"
LISTENERS_CMD = "ss -Hltn"


def sha256_text(content) -> str:
    if isinstance(content, str):
        content = content.encode()
    return hashlib.sha256(content).hexdigest()


def is_loopback(address) -> bool:
    return address in LOOPBACK_ADDRESSES or address.startswith("127.")


@dataclass(frozen=True)
class ContainerInfo:
    state: str
    published: tuple[str, ...] = ()  # host-side bind addresses, e.g. "127.0.0.1:5432"


@dataclass(frozen=True)
class UnitInfo:
    active_state: str = "inactive"
    sub_state: str = "dead"
    unit_file_state: str = ""
    load_state: str = "not-found"

    @property
    def exists(self) -> bool:
        return self.load_state not in ("not-found", "")


@dataclass
class ProbeTargets:
    """What to look at on the host. Packages, containers and listeners are always probed."""

    units: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class HostState:
    """Observed facts about the host at one instant.

    Never reused across steps: external actors may change the host between
    any two commands, so the plan probes again before each step.
    """

    packages: frozenset = frozenset()
    containers: dict = field(default_factory=dict)
    units: dict = field(default_factory=dict)
    listeners: tuple = ()  # (address, port) pairs
    paths: frozenset = frozenset()
    file_hashes: dict = field(default_factory=dict)

    # ── queries ──────────────────────────────────────────────────

    def has_packages(self, names) -> bool:
        return set(names) <= self.packages

    def missing_packages(self, names) -> list[str]:
        return [n for n in names if n not in self.packages]

    def exists(self, path) -> bool:
        return path in self.paths or path in self.file_hashes

    def file_matches(self, path, content) -> bool:
        return self.file_hashes.get(path) == sha256_text(content)

    def unit(self, name) -> UnitInfo:
        return self.units.get(name, UnitInfo())

    def container(self, name) -> ContainerInfo | None:
        return self.containers.get(name)

    def listeners_on(self, port) -> list[str]:
        return [addr for addr, p in self.listeners if p == port]

    # ── probing ──────────────────────────────────────────────────

    @classmethod
    async def probe(cls, executor, targets: ProbeTargets | None = None) -> "HostState":
        """Collect a fresh snapshot from *executor*.

        Probe commands run with check=False: a missing tool (e.g. docker
        before it is installed) simply yields an empty fact set.
        """
        targets = targets or ProbeTargets()

        packages = _parse_packages((await executor.run(PACKAGES_CMD, check=False)).stdout)
        containers = _parse_containers((await executor.run(CONTAINERS_CMD, check=False)).stdout)
        listeners = _parse_listeners((await executor.run(LISTENERS_CMD, check=False)).stdout)

        units = {}
        for name in targets.units:
            result = await executor.run(
                f"systemctl show {shlex.quote(name)} --property=ActiveState,SubState,UnitFileState,LoadState --no-pager",
                check=False,
            )
            units[name] = _parse_unit(result.stdout)

        paths = frozenset()
        if targets.paths:
            quoted = " ".join(shlex.quote(p) for p in targets.paths)
            result = await executor.run(f"ls -1d -- {quoted}", check=False)
            paths = frozenset(line.strip() for line in result.stdout.splitlines() if line.strip())

        file_hashes = {}
        if targets.files:
            quoted = " ".join(shlex.quote(p) for p in targets.files)
            result = await executor.run(f"sha256sum -- {quoted}", check=False)
            file_hashes = _parse_hashes(result.stdout)

        state = cls(
            packages=packages,
            containers=containers,
            units=units,
            listeners=listeners,
            paths=paths,
            file_hashes=file_hashes,
        )
        logger.debug(
            f"[{executor.host}] probed: {len(packages)} packages, {len(containers)} containers, "
            f"{len(listeners)} listeners, {len(paths)} paths, {len(file_hashes)} files"
        )
        return state


# ── parsers ─────────────────────────────────────────────────────────


def _parse_packages(stdout) -> frozenset:
    installed = set()
    for line in stdout.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[-1] == "installed":
            installed.add(parts[0].split(":")[0])  # drop ":amd64" arch suffix
    return frozenset(installed)


def _parse_containers(stdout) -> dict:
    containers = {}
    for line in stdout.splitlines():
        if not line.strip():
            continue
        name, _, rest = line.partition("\t")
        state, _, ports = rest.partition("\t")
        published = []
        for mapping in ports.split(","):
            mapping = mapping.strip()
            if "->" not in mapping:
                continue  # exposed but not published
            host_side = mapping.split("->")[0]
            published.append(host_side)
        containers[name.strip()] = ContainerInfo(state=state.strip(), published=tuple(published))
    return containers


def _split_host_port(value):
    address, _, port = value.rpartition(":")
    try:
        return address, int(port)
    except ValueError:
        return value, None


def _parse_listeners(stdout) -> tuple:
    listeners = []
    for line in stdout.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        address, port = _split_host_port(parts[3])
        if port is not None:
            listeners.append((address, port))
    return tuple(listeners)


def _parse_unit(stdout) -> UnitInfo:
    props = dict(line.split("=", 1) for line in stdout.splitlines() if "=" in line)
    return UnitInfo(
        active_state=props.get("ActiveState", "inactive"),
        sub_state=props.get("SubState", "dead"),
        unit_file_state=props.get("UnitFileState", ""),
        load_state=props.get("LoadState", "not-found"),
    )


def _parse_hashes(stdout) -> dict:
    hashes = {}
    for line in stdout.splitlines():
        digest, _, path = line.partition("  ")
        if path:
            hashes[path.strip()] = digest.strip()
    return hashes


def published_address(binding) -> str:
    """Host address of a published docker port, e.g. '127.0.0.1:5432' -> '127.0.0.1'."""
    return _split_host_port(binding)[0]
