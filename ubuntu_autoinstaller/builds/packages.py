"""Offline package repository helpers.

Extra packages requested for the installed system are bundled on the ISO
as a flat APT repository under ``mnt/packages`` together with a script that
points APT at it and installs them.
"""

from __future__ import annotations

import gzip
import re
import shutil
from pathlib import Path

APT_CACHE_DEPENDS_FLAGS = [
    "--recurse",
    "--no-recommends",
    "--no-suggests",
    "--no-conflicts",
    "--no-breaks",
    "--no-replaces",
    "--no-enhances",
    "--no-pre-depends",
]

DEPENDENCY_LINE_PATTERN = re.compile(r"^[A-Za-z0-9]")
EXCLUDED_ARCH = "i386"

INSTALL_SCRIPT_NAME = "install-pkgs.sh"
PACKAGES_INDEX = "Packages"
PACKAGES_INDEX_GZ = "Packages.gz"

INSTALL_SCRIPT_TEMPLATE = """#!/bin/bash
cp /etc/apt/sources.list /etc/apt/sources.list.bak
echo 'deb [trusted=yes] file:///mnt/packages/ ./' > /etc/apt/sources.list
apt-get update
apt-get install -y {packages}
"""


def compose_depends_command(package: str) -> list[str]:
    """Compose the apt-cache command listing a package's dependency closure."""
    return ["apt-cache", "depends", *APT_CACHE_DEPENDS_FLAGS, package]


def filter_dependencies(lines: list[str]) -> list[str]:
    """Extract package names from ``apt-cache depends --recurse`` output.

    Package names start in the first column; indented relationship lines
    (``  Depends: ...``) and ``<virtual>`` markers are dropped, as are i386
    packages. Order is kept, duplicates removed.
    """
    deps: list[str] = []
    seen: set[str] = set()
    for raw in lines:
        line = raw.rstrip()
        if not DEPENDENCY_LINE_PATTERN.match(line):
            continue
        if EXCLUDED_ARCH in line or line in seen:
            continue
        seen.add(line)
        deps.append(line)
    return deps


def render_install_script(packages: list[str]) -> str:
    """Render the first-boot script that installs the bundled packages."""
    return INSTALL_SCRIPT_TEMPLATE.format(packages=" ".join(packages))


def write_install_script(script_dir: Path, packages: list[str]) -> Path:
    """Write the executable install script into ``script_dir``."""
    script_dir.mkdir(parents=True, exist_ok=True)
    path = script_dir / INSTALL_SCRIPT_NAME
    path.write_text(render_install_script(packages))
    path.chmod(0o755)
    return path


def compress_index(packages_dir: Path) -> Path:
    """Write ``Packages.gz`` next to the ``Packages`` index.

    Returns:
        Path of the compressed index.
    """
    plain = packages_dir / PACKAGES_INDEX
    compressed = packages_dir / PACKAGES_INDEX_GZ
    with plain.open("rb") as src, gzip.open(compressed, "wb", compresslevel=9) as dst:
        shutil.copyfileobj(src, dst)
    return compressed


__all__ = [
    "APT_CACHE_DEPENDS_FLAGS",
    "INSTALL_SCRIPT_NAME",
    "PACKAGES_INDEX",
    "PACKAGES_INDEX_GZ",
    "compose_depends_command",
    "compress_index",
    "filter_dependencies",
    "render_install_script",
    "write_install_script",
]
