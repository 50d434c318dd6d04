"""Deploy parameters dataclass."""

from dataclasses import dataclass

from hostwright.descriptor import ProjectFile


@dataclass
class DeployParams:
    """Everything needed to deploy one project file to one host."""

    project: ProjectFile
    local: bool = False  # deploy onto this machine instead of over SSH
    use_sudo: bool = False  # local only; SSH decides from the login user

    @property
    def name(self) -> str:
        return self.project.descriptor.name

    @property
    def host(self) -> str:
        return "localhost" if self.local else self.project.target.host
