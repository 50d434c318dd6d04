"""Project descriptor, engine settings, and YAML project-file loading."""

import os
import re
from dataclasses import MISSING, dataclass, field, fields

import yaml

from hostwright.errors import ValidationError

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")
_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")
_ENTRYPOINT_RE = re.compile(r"^[A-Za-z_][\w]*(\.[A-Za-z_][\w]*)*(:[A-Za-z_][\w]*(\(\))?)?$")
_DB_IDENT_RE = re.compile(r"^[A-Za-z_][\w]{0,62}$")
_USER_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

APP_SERVERS = ("gunicorn", "uvicorn")

DB_PASSWORD_ENV = "HOSTWRIGHT_DB_PASSWORD"
MIN_DB_PASSWORD_LENGTH = 8

BASE_PACKAGES = ["docker.io", "nginx", "git", "python3-venv", "certbot"]


@dataclass(frozen=True)
class ProjectDescriptor:
    """Everything needed to deploy one project. Immutable once a plan exists."""

    name: str
    repo_url: str
    domain: str
    app_port: int
    db_user: str
    db_password: str
    db_name: str
    app_entrypoint: str
    db_port: int = 5432
    db_image: str = "postgres:16"
    app_server: str = "gunicorn"
    workers: int = 2
    run_as: str = "www-data"
    admin_email: str | None = None
    branch: str | None = None
    packages: tuple[str, ...] = ()

    @property
    def unit_name(self) -> str:
        return f"{self.name}.service"

    @property
    def db_container(self) -> str:
        return f"{self.name}-db"

    @property
    def all_packages(self) -> list[str]:
        """Base packages plus project extras, de-duplicated in order."""
        return list(dict.fromkeys(BASE_PACKAGES + list(self.packages)))

    def __repr__(self):
        # Keep the password out of tracebacks and debug logs
        return f"ProjectDescriptor(name={self.name!r}, domain={self.domain!r}, app_port={self.app_port!r})"


@dataclass
class EngineSettings:
    """Host layout and engine tunables. Overridable from the project file."""

    project_root: str = "/srv"
    cert_root: str = "/etc/letsencrypt/live"
    webroot: str = "/var/www/letsencrypt"
    nginx_dir: str = "/etc/nginx"
    systemd_dir: str = "/etc/systemd/system"
    audit_dir: str = "~/.hostwright/runs"
    command_timeout: int = 600
    dns_resolver_url: str = "https://cloudflare-dns.com/dns-query"
    renew_before_days: int = 30

    def project_dir(self, descriptor: ProjectDescriptor) -> str:
        return f"{self.project_root}/{descriptor.name}"

    @classmethod
    def from_dict(cls, data) -> "EngineSettings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"Unknown settings keys: {', '.join(unknown)}")
        return cls(**data)


@dataclass
class TargetConfig:
    """Where to deploy: an SSH address, or the local machine."""

    server: str | None = None  # user@host or IP
    ssh_key: str = "~/.ssh/id_ed25519"
    ssh_port: int = 22
    public_ip: str | None = None

    @property
    def host(self) -> str:
        """Hostname/IP without the user part."""
        if not self.server:
            return "localhost"
        return self.server.split("@")[-1]


@dataclass
class ProjectFile:
    """A loaded project file: descriptor, target, and settings."""

    descriptor: ProjectDescriptor
    target: TargetConfig = field(default_factory=TargetConfig)
    settings: EngineSettings = field(default_factory=EngineSettings)


def deep_merge(base, override):
    """Recursive dict merge. Override wins for scalars."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def validate_descriptor(descriptor: ProjectDescriptor) -> None:
    """Raise ValidationError listing every problem with *descriptor*."""
    problems = []

    if not isinstance(descriptor.name, str) or not _NAME_RE.match(descriptor.name):
        problems.append(f"name {descriptor.name!r} must match {_NAME_RE.pattern} (used as a path and unit name)")
    if not descriptor.repo_url:
        problems.append("repo_url is required")
    if not isinstance(descriptor.domain, str) or not _DOMAIN_RE.match(descriptor.domain.lower()):
        problems.append(f"domain {descriptor.domain!r} is not a valid hostname")
    for label in ("app_port", "db_port"):
        port = getattr(descriptor, label)
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            problems.append(f"{label} {port!r} must be an integer in 1..65535")
    if descriptor.app_port == descriptor.db_port:
        problems.append(f"app_port and db_port must differ (both {descriptor.app_port})")
    for label in ("db_user", "db_name"):
        value = getattr(descriptor, label)
        if not isinstance(value, str) or not _DB_IDENT_RE.match(value):
            problems.append(f"{label} {value!r} must be a plain identifier")
    if not descriptor.db_password:
        problems.append(f"db_password is required (or set ${DB_PASSWORD_ENV})")
    elif len(descriptor.db_password) < MIN_DB_PASSWORD_LENGTH:
        problems.append(f"db_password must be at least {MIN_DB_PASSWORD_LENGTH} characters")
    elif "'" in descriptor.db_password or "\n" in descriptor.db_password:
        problems.append("db_password must not contain quotes or newlines")
    if not isinstance(descriptor.app_entrypoint, str) or not _ENTRYPOINT_RE.match(descriptor.app_entrypoint):
        problems.append(f"app_entrypoint {descriptor.app_entrypoint!r} must look like 'package.module:app'")
    if descriptor.app_server not in APP_SERVERS:
        problems.append(f"app_server {descriptor.app_server!r} must be one of {', '.join(APP_SERVERS)}")
    if isinstance(descriptor.workers, bool) or not isinstance(descriptor.workers, int) or descriptor.workers < 1:
        problems.append(f"workers {descriptor.workers!r} must be a positive integer")
    if not isinstance(descriptor.run_as, str) or not _USER_RE.match(descriptor.run_as):
        problems.append(f"run_as {descriptor.run_as!r} must be a system user name")

    if problems:
        raise ValidationError(
            f"Invalid project descriptor '{descriptor.name}'",
            diagnostic="\n".join(f"- {p}" for p in problems),
        )


def descriptor_from_dict(project) -> ProjectDescriptor:
    """Build a ProjectDescriptor from the ``project:`` mapping of a project file."""
    project = dict(project)
    db = project.pop("db", {}) or {}
    for key in ("user", "password", "name", "port", "image"):
        if key in db:
            project.setdefault(f"db_{key}", db[key])

    if not project.get("db_password"):
        project["db_password"] = os.environ.get(DB_PASSWORD_ENV, "")

    known = {f.name for f in fields(ProjectDescriptor)}
    unknown = sorted(set(project) - known)
    if unknown:
        raise ValidationError(f"Unknown project keys: {', '.join(unknown)}")
    missing = [
        f.name for f in fields(ProjectDescriptor)
        if f.default is MISSING and f.default_factory is MISSING and f.name not in project
    ]
    if missing:
        raise ValidationError(f"Missing project keys: {', '.join(missing)}")

    if "packages" in project:
        project["packages"] = tuple(project["packages"] or ())
    return ProjectDescriptor(**project)


def load_project(path, environment=None) -> ProjectFile:
    """Load a project YAML file, optionally deep-merging an environment override."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Project file not found: {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    environments = config.pop("environments", {})

    if environment is not None:
        if environment not in environments:
            available = ", ".join(sorted(environments.keys())) if environments else "none"
            raise ValueError(f"Unknown environment '{environment}'. Available environments: {available}")
        config = deep_merge(config, environments[environment])

    if "project" not in config:
        raise ValidationError(f"{path}: missing top-level 'project' section")

    descriptor = descriptor_from_dict(config["project"])
    target = TargetConfig(**(config.get("target") or {}))
    settings = EngineSettings.from_dict(config.get("settings") or {})
    return ProjectFile(descriptor=descriptor, target=target, settings=settings)
