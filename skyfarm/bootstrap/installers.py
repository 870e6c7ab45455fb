"""Java runtime install strategies.

Each strategy pairs a package-manager detection command with an install
command per Java version. Strategies and versions are tried in the order
declared here.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

RUNTIME_VERSION_CHECK: Final = "java -fullversion"

RUNTIME_VERSIONS: Final = ("1.8", "1.7", "1.9")


@dataclass(frozen=True, slots=True)
class RuntimeInstaller:
    """Install strategy for one package manager.

    Example:
        >>> APT.install_command("1.8")
        'apt-get update -q && apt-get install -y openjdk-8-jre-headless'
    """

    name: str
    detect_command: str
    package: Callable[[str], str]
    install_template: str

    def install_command(self, version: str) -> str:
        return self.install_template.format(package=self.package(version))


APT: Final = RuntimeInstaller(
    name="apt",
    detect_command="which apt-get",
    package=lambda v: f"openjdk-{v.removeprefix('1.')}-jre-headless",
    install_template="apt-get update -q && apt-get install -y {package}",
)

YUM: Final = RuntimeInstaller(
    name="yum",
    detect_command="which yum",
    package=lambda v: f"java-{v}.0-openjdk-headless",
    install_template="yum install -y {package}",
)

INSTALLERS: Final[tuple[RuntimeInstaller, ...]] = (APT, YUM)
