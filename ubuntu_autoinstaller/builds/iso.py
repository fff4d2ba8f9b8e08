"""Helpers for editing an extracted Ubuntu live-server ISO tree.

This module handles:
- Parsing image metadata from ISO file names
- Injecting autoinstall kernel parameters into boot configs
- Switching boot entries to the HWE kernel
- Maintaining md5sum.txt
- Composing the xorriso repackaging command per release
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Version prefix -> release codename
UBUNTU_CODENAMES = {
    "20.04": "focal",
    "22.04": "jammy",
    "24.04": "noble",
}

ISO_NAME_PATTERN = re.compile(r"ubuntu-(\d{2}\.04)(\.\d+)?-live-server-amd64\.iso")

GRUB_CONFIG_PATH = "boot/grub/grub.cfg"
LOOPBACK_CONFIG_PATH = "boot/grub/loopback.cfg"
ISOLINUX_CONFIG_PATH = "isolinux/txt.cfg"
MD5SUM_FILE = "md5sum.txt"
USER_DATA_FILE = "user-data"
META_DATA_FILE = "meta-data"

ISOHDPFX_PATH = "/usr/lib/ISOLINUX/isohdpfx.bin"

AUTOINSTALL_KEYWORD = "autoinstall"
GRUB_INSERT_TEXT = "autoinstall ds=nocloud\\;s=/cdrom/"
ISOLINUX_INSERT_TEXT = "autoinstall ds=nocloud;s=/cdrom/"
BOOT_LINE_MARKER = "---"

KERNEL_FILE = "/casper/vmlinuz"
INITRD_FILE = "/casper/initrd"
HWE_KERNEL_FILE = "/casper/hwe-vmlinuz"
HWE_INITRD_FILE = "/casper/hwe-initrd"
HWE_KERNEL_MARKER = "hwe-vmlinuz"


class ImageNameError(ValueError):
    """Raised when an ISO file name cannot be parsed."""

    def __init__(self, message: str, code: str = "invalid_image_name") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ImageMeta:
    """Metadata derived from an Ubuntu ISO file name.

    ``ubuntu-22.04.5-live-server-amd64.iso`` yields distro ``ubuntu``,
    version ``22.04.5``, variant ``live-server``, arch ``amd64`` and
    codename ``jammy``.
    """

    filename: str
    distro: str
    version: str
    variant: str
    arch: str
    codename: str | None

    @property
    def is_focal(self) -> bool:
        return self.codename == "focal"


def codename_for_version(version: str) -> str | None:
    """Map a release version (``22.04`` or ``22.04.5``) to its codename."""
    for prefix, codename in UBUNTU_CODENAMES.items():
        if version.startswith(prefix):
            return codename
    return None


def parse_image_name(filename: str) -> ImageMeta:
    """Parse metadata from an ISO file name.

    Raises:
        ImageNameError: If the name does not follow the
            ``<distro>-<version>-<build>-<variant>-<arch>.iso`` pattern.
    """
    base = Path(filename).name
    stem = base[: -len(".iso")] if base.endswith(".iso") else Path(base).stem
    parts = stem.split("-")
    if len(parts) < 5:
        raise ImageNameError(f"Unexpected ISO filename format: {base}")
    return ImageMeta(
        filename=base,
        distro=parts[0],
        version=parts[1],
        variant=f"{parts[2]}-{parts[3]}",
        arch=parts[4],
        codename=codename_for_version(parts[1]),
    )


def find_iso_name(index_html: str) -> str | None:
    """Find the live-server ISO file name in a release index page."""
    match = ISO_NAME_PATTERN.search(index_html)
    return match.group(0) if match else None


def boot_config_paths(codename: str | None) -> list[str]:
    """Return the boot configs that carry kernel command lines."""
    if codename == "focal":
        return [GRUB_CONFIG_PATH, ISOLINUX_CONFIG_PATH, LOOPBACK_CONFIG_PATH]
    return [GRUB_CONFIG_PATH]


def inject_autoinstall_line(line: str, insert_text: str) -> str:
    """Add autoinstall parameters to one boot entry line.

    Only ``linux``/``append`` lines ending with ``---`` that lack the
    ``autoinstall`` keyword are touched. Parameters go after ``quiet``,
    or at the end when ``quiet`` is absent.
    """
    stripped = line.lstrip(" \t")
    indent = line[: len(line) - len(stripped)]
    body = line.rstrip(" \t")
    if not (stripped.startswith("linux") or stripped.startswith("append")):
        return line
    if not body.endswith(BOOT_LINE_MARKER) or AUTOINSTALL_KEYWORD in line:
        return line

    parts = body[: -len(BOOT_LINE_MARKER)].split()
    new_parts: list[str] = []
    quiet_found = False
    for part in parts:
        new_parts.append(part)
        if part == "quiet":
            quiet_found = True
            new_parts.append(insert_text)
    if not quiet_found and parts:
        new_parts.append(insert_text)
    return f"{indent}{' '.join(new_parts)} {BOOT_LINE_MARKER}"


def inject_autoinstall_params(path: Path, insert_text: str = GRUB_INSERT_TEXT) -> bool:
    """Rewrite a boot config so its entries start the autoinstaller.

    Args:
        path: Boot config file; missing files are skipped.
        insert_text: Parameters to insert.

    Returns:
        True if the file was modified.
    """
    if not path.exists():
        logger.debug("Boot config %s not present, skipping", path)
        return False

    lines = path.read_text().split("\n")
    new_lines = [inject_autoinstall_line(line, insert_text) for line in lines]
    if new_lines == lines:
        return False
    path.write_text("\n".join(new_lines))
    path.chmod(0o644)
    return True


def supports_hwe_kernel(build_dir: Path) -> bool:
    """Check whether the extracted ISO ships an HWE kernel entry."""
    grub_cfg = build_dir / GRUB_CONFIG_PATH
    if not grub_cfg.exists():
        return False
    return HWE_KERNEL_MARKER in grub_cfg.read_text()


def switch_to_hwe_kernel(path: Path) -> bool:
    """Point kernel and initrd paths of a boot config at the HWE variants.

    Returns:
        True if the file was modified.
    """
    if not path.exists():
        return False
    content = path.read_text()
    new_content = content.replace(KERNEL_FILE, HWE_KERNEL_FILE).replace(
        INITRD_FILE, HWE_INITRD_FILE
    )
    if new_content == content:
        return False
    path.write_text(new_content)
    path.chmod(0o644)
    return True


def compute_file_md5(path: Path, chunk_size: int = 64 * 1024) -> str:
    """Compute the MD5 hex digest of a file."""
    md5 = hashlib.md5()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            md5.update(chunk)
    return md5.hexdigest()


def update_md5sum_entry(md5sum_path: Path, relative_path: str, digest: str) -> None:
    """Upsert the md5sum.txt entry of one file.

    The new entry is written first; existing entries mentioning the same
    path are dropped.
    """
    lines = [f"{digest}  {relative_path}"]
    if md5sum_path.exists():
        for line in md5sum_path.read_text().split("\n"):
            if line and relative_path not in line:
                lines.append(line)
    md5sum_path.write_text("\n".join(lines))


def refresh_md5sums(build_dir: Path, codename: str | None) -> list[str]:
    """Refresh md5sum.txt entries for the modified grub configs.

    Returns:
        Relative paths whose entries were updated.
    """
    md5sum_path = build_dir / MD5SUM_FILE
    paths = [GRUB_CONFIG_PATH]
    if codename == "focal":
        paths.append(LOOPBACK_CONFIG_PATH)
    for relative_path in paths:
        digest = compute_file_md5(build_dir / relative_path)
        update_md5sum_entry(md5sum_path, relative_path, digest)
    return paths


def clear_md5sums(build_dir: Path) -> None:
    """Truncate md5sum.txt so the installer skips the integrity check."""
    (build_dir / MD5SUM_FILE).write_text("")


def volume_label(codename: str) -> str:
    """Return the ISO volume label for a release."""
    return f"ubuntu-server-{codename}-autoinstall"


def compose_xorriso_command(codename: str, output: Path) -> list[str]:
    """Compose the xorriso command that repackages the tree.

    The command must run with the extracted tree as working directory.

    Args:
        codename: Release codename; focal uses the isolinux layout.
        output: Destination ISO path.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["xorriso", "-as", "mkisofs", "-r", "-V", volume_label(codename)]
    cmd += ["-o", str(output)]
    if codename == "focal":
        cmd += [
            "-J",
            "-b", "isolinux/isolinux.bin",
            "-c", "isolinux/boot.cat",
            "-no-emul-boot",
            "-boot-load-size", "4",
            "-isohybrid-mbr", ISOHDPFX_PATH,
            "-boot-info-table",
            "-input-charset", "utf-8",
            "-eltorito-alt-boot",
            "-e", "boot/grub/efi.img",
            "-no-emul-boot",
            "-isohybrid-gpt-basdat",
        ]  # fmt: skip
    else:
        cmd += [
            "--grub2-mbr", "../BOOT/1-Boot-NoEmul.img",
            "-partition_offset", "16",
            "--mbr-force-bootable",
            "-append_partition", "2", "28732ac11ff8d211ba4b00a0c93ec93b",
            "../BOOT/2-Boot-NoEmul.img",
            "-appended_part_as_gpt",
            "-iso_mbr_part_type", "a2a0d0ebe5b9334487c068b6b72699c7",
            "-c", "/boot.catalog",
            "-b", "/boot/grub/i386-pc/eltorito.img",
            "-no-emul-boot",
            "-boot-load-size", "4",
            "-boot-info-table",
            "--grub2-boot-info",
            "-eltorito-alt-boot",
            "-e", "--interval:appended_partition_2:::",
            "-no-emul-boot",
        ]  # fmt: skip
    cmd.append(".")
    return cmd


def compose_extract_command(codename: str | None, iso_path: Path, dest: Path) -> list[str]:
    """Compose the command that unpacks an ISO into ``dest``."""
    if codename == "focal":
        return [
            "xorriso", "-osirrox", "on", "-indev", str(iso_path),
            "-extract", "/", str(dest),
        ]  # fmt: skip
    return ["7z", "-y", "x", str(iso_path), f"-o{dest}"]


__all__ = [
    "GRUB_CONFIG_PATH",
    "GRUB_INSERT_TEXT",
    "ISOHDPFX_PATH",
    "ISOLINUX_CONFIG_PATH",
    "ISOLINUX_INSERT_TEXT",
    "ISO_NAME_PATTERN",
    "LOOPBACK_CONFIG_PATH",
    "MD5SUM_FILE",
    "META_DATA_FILE",
    "UBUNTU_CODENAMES",
    "USER_DATA_FILE",
    "ImageMeta",
    "ImageNameError",
    "boot_config_paths",
    "clear_md5sums",
    "codename_for_version",
    "compose_extract_command",
    "compose_xorriso_command",
    "compute_file_md5",
    "find_iso_name",
    "inject_autoinstall_line",
    "inject_autoinstall_params",
    "parse_image_name",
    "refresh_md5sums",
    "supports_hwe_kernel",
    "switch_to_hwe_kernel",
    "update_md5sum_entry",
    "volume_label",
]
