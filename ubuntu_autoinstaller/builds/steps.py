"""Pipeline step executors.

One executor per step kind. Executors read the request snapshot and the
outputs of earlier steps from the StepContext, stream progress through
``ctx.emit`` and return their own outputs. Failures surface as
StepFailedError; a step removes its own partial output when it can.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from ubuntu_autoinstaller.artifacts.store import UPLOAD_HANDLE_PREFIX, UploadNotFoundError
from ubuntu_autoinstaller.builds import iso
from ubuntu_autoinstaller.builds.fetch import (
    SHA256SUMS,
    SHA256SUMS_GPG,
    DownloadCancelledError,
    DownloadError,
    compute_file_sha256,
    digest_listed,
    download_file,
    find_release_iso,
    release_base_url,
)
from ubuntu_autoinstaller.builds.packages import (
    PACKAGES_INDEX,
    compose_depends_command,
    compress_index,
    filter_dependencies,
    write_install_script,
)
from ubuntu_autoinstaller.builds.runner import (
    WATCH_INTERVAL,
    StepCancelledError,
    StepContext,
    StepFailedError,
    StepResult,
    run_process,
)
from ubuntu_autoinstaller.types import SourceType
from ubuntu_autoinstaller.userdata.render import UserDataError, render_user_data

if TYPE_CHECKING:
    from ubuntu_autoinstaller.artifacts.store import ArtifactStore
    from ubuntu_autoinstaller.config import Settings

logger = logging.getLogger(__name__)

# Output keys shared between steps
SOURCE_ISO = "source_iso"
CODENAME = "codename"
IMAGE = "image"
SOURCE_SHA256 = "source_sha256"
MODIFIED_FILES = "modified_files"
BUNDLED_PACKAGES = "bundled_packages"
HWE_KERNEL = "hwe_kernel"
OUTPUT_ISO = "output_iso"
OUTPUT_SHA256 = "sha256"
CHECKSUM_FILE = "checksum_file"

# Ubuntu CD image signing key
UBUNTU_SIGNING_KEY_ID = "843938DF228D22F7B3742BC0D94AA3F0EFE21092"
RECV_KEY_ATTEMPTS = 3
RECV_KEY_RETRY_DELAY = 5.0

ClientFactory = Callable[[], httpx.Client]


def _codename(ctx: StepContext) -> str | None:
    return ctx.outputs.get(CODENAME) or ctx.config.code_name


def _require_codename(ctx: StepContext) -> str:
    codename = _codename(ctx)
    if codename is None:
        raise StepFailedError("Ubuntu release unknown; set code_name")
    return codename


def _require_output(ctx: StepContext, key: str) -> Path:
    value = ctx.outputs.get(key)
    if value is None:
        raise StepFailedError(f"Missing output '{key}' from an earlier step")
    return Path(value)


def _chmod_tree(root: Path, mode: int) -> None:
    os.chmod(root, mode)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                os.chmod(path, mode)


def _reset_dir(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


def required_tools(ctx: StepContext) -> list[str]:
    """List the host commands the configured build will call."""
    config = ctx.config
    tools = ["xorriso"]
    # Release unknown until the source is resolved; 7z covers jammy and later
    if config.code_name != "focal":
        tools.append("7z")
    if config.source_type == SourceType.DOWNLOAD and config.gpg_verify:
        tools.append("gpg")
    if config.packages:
        tools += ["apt-cache", "apt-get", "dpkg-scanpackages"]
    return tools


class PrepareStep:
    """Check host tools and lay out the build's working tree."""

    def __init__(self, which: Callable[[str], str | None] = shutil.which) -> None:
        self._which = which

    def run(self, ctx: StepContext) -> StepResult:
        missing = [tool for tool in required_tools(ctx) if self._which(tool) is None]
        if missing:
            raise StepFailedError(f"Required tools not found: {', '.join(missing)}")
        if ctx.config.code_name == "focal" and not Path(iso.ISOHDPFX_PATH).exists():
            raise StepFailedError(
                "isolinux is not installed. On Ubuntu, install the 'isolinux' package"
            )
        ctx.info("All required tools are installed")

        try:
            for directory in ctx.tree.directories():
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StepFailedError(f"Failed to create working tree: {e}") from e
        ctx.info(f"Prepared working directory {ctx.work_dir}")
        return StepResult()


class AcquireSourceStep:
    """Obtain the base ISO: download a release or resolve a local image."""

    def __init__(
        self,
        settings: Settings,
        store: ArtifactStore | None = None,
        client_factory: ClientFactory = httpx.Client,
    ) -> None:
        self._settings = settings
        self._store = store
        self._client_factory = client_factory
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(str(path), threading.Lock())

    @contextmanager
    def _cache_lock(self, path: Path, ctx: StepContext) -> Iterator[None]:
        """Hold the cache lock for path, giving up if the build is cancelled."""
        lock = self._lock_for(path)
        if not lock.acquire(blocking=False):
            ctx.info(f"Waiting for another build to finish downloading {path.name}")
            while not lock.acquire(timeout=WATCH_INTERVAL):
                ctx.raise_if_cancelled()
        try:
            yield
        finally:
            lock.release()

    def run(self, ctx: StepContext) -> StepResult:
        if ctx.config.source_type == SourceType.DOWNLOAD:
            source = self._download(ctx)
            filename = source.name
        else:
            source, filename = self._resolve_local(ctx)

        try:
            meta: iso.ImageMeta | None = iso.parse_image_name(filename)
        except iso.ImageNameError:
            meta = None
        codename = (meta.codename if meta else None) or ctx.config.code_name
        if codename is None:
            raise StepFailedError(
                f"Cannot determine the Ubuntu release of {filename}; set code_name"
            )
        if ctx.config.code_name and codename != ctx.config.code_name:
            ctx.warning(
                f"{filename} looks like {codename}, not {ctx.config.code_name}; "
                f"using {codename}"
            )
        ctx.info(f"Source image {filename} ({codename})")
        return StepResult({SOURCE_ISO: source, CODENAME: codename, IMAGE: meta})

    def _download(self, ctx: StepContext) -> Path:
        codename = _require_codename(ctx)
        mirror = self._settings.ubuntu_mirror
        try:
            with self._client_factory() as client:
                ctx.info(f"Checking for current {codename} release...")
                name = find_release_iso(client, codename, mirror)
                dest = self._settings.source_cache_dir / name
                with self._cache_lock(dest, ctx):
                    if dest.exists():
                        ctx.info(f"Using cached {dest}")
                        return dest
                    url = f"{release_base_url(codename, mirror)}/{name}"
                    ctx.info(f"Downloading {url}")
                    result = download_file(
                        client,
                        url,
                        dest,
                        timeout=self._settings.download_timeout,
                        cancel_event=ctx.cancel_event,
                    )
        except DownloadCancelledError as e:
            raise StepCancelledError(str(e)) from e
        except DownloadError as e:
            raise StepFailedError(f"ISO download failed: {e}") from e
        ctx.info(f"Downloaded {result.size_bytes} bytes to {result.path}")
        return result.path

    def _resolve_local(self, ctx: StepContext) -> tuple[Path, str]:
        reference = ctx.config.source_iso
        if not reference:
            raise StepFailedError("source_iso is required for a local source")
        if reference.startswith(UPLOAD_HANDLE_PREFIX):
            if self._store is None:
                raise StepFailedError("Uploaded sources are not available")
            try:
                upload = self._store.resolve_upload(reference)
            except UploadNotFoundError as e:
                raise StepFailedError(str(e)) from e
            ctx.info(f"Using uploaded ISO {upload.filename}")
            return upload.path, upload.filename

        path = Path(reference)
        if not path.is_absolute() or not path.is_file():
            raise StepFailedError(f"Local ISO not found: {reference}")
        ctx.info(f"Using local ISO {path}")
        return path, path.name


class VerifyStep:
    """Check the downloaded ISO against Ubuntu's signed SHA256SUMS."""

    def __init__(
        self,
        settings: Settings,
        client_factory: ClientFactory = httpx.Client,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory

    def run(self, ctx: StepContext) -> StepResult:
        source = _require_output(ctx, SOURCE_ISO)
        codename = _require_codename(ctx)
        verify_dir = ctx.tree.download_dir
        sums = verify_dir / SHA256SUMS
        signature = verify_dir / SHA256SUMS_GPG
        keyring = verify_dir / f"{UBUNTU_SIGNING_KEY_ID}.keyring"

        base = release_base_url(codename, self._settings.ubuntu_mirror)
        try:
            with self._client_factory() as client:
                ctx.info(f"Downloading {SHA256SUMS} & {SHA256SUMS_GPG}")
                download_file(client, f"{base}/{SHA256SUMS}", sums)
                download_file(client, f"{base}/{SHA256SUMS_GPG}", signature)
        except DownloadError as e:
            raise StepFailedError(f"Failed to download checksums: {e}") from e

        self._receive_key(ctx, keyring)

        ctx.info("Verifying integrity and authenticity...")
        run_process(
            ["gpg", "--keyring", str(keyring), "--verify", str(signature), str(sums)],
            ctx,
        )

        ctx.info(f"Computing SHA-256 of {source.name}")
        digest = compute_file_sha256(source)
        if not digest_listed(sums.read_text(), digest):
            raise StepFailedError(
                f"Verification of ISO digest failed: {digest} is not listed in {SHA256SUMS}"
            )
        ctx.info("Verification succeeded")
        return StepResult({SOURCE_SHA256: digest})

    def _receive_key(self, ctx: StepContext, keyring: Path) -> None:
        cmd = [
            "gpg",
            "--no-default-keyring",
            "--keyring", str(keyring),
            "--keyserver", self._settings.keyserver,
            "--recv-keys", UBUNTU_SIGNING_KEY_ID,
        ]  # fmt: skip
        for attempt in range(1, RECV_KEY_ATTEMPTS + 1):
            try:
                run_process(cmd, ctx)
                return
            except StepFailedError:
                if attempt == RECV_KEY_ATTEMPTS:
                    raise
                ctx.warning(
                    f"Receiving signing key failed (attempt {attempt}/{RECV_KEY_ATTEMPTS})"
                )
                if ctx.cancel_event.wait(RECV_KEY_RETRY_DELAY):
                    raise StepCancelledError() from None


class ExtractStep:
    """Unpack the ISO into the build tree."""

    def run(self, ctx: StepContext) -> StepResult:
        source = _require_output(ctx, SOURCE_ISO)
        codename = _codename(ctx)
        tree = ctx.tree
        boot_iso = tree.build_dir / "[BOOT]"

        ctx.info(f"Extracting {source.name}...")
        try:
            run_process(iso.compose_extract_command(codename, source, tree.build_dir), ctx)

            if codename == "focal":
                shutil.rmtree(boot_iso, ignore_errors=True)
            else:
                shutil.rmtree(tree.boot_dir, ignore_errors=True)
                if boot_iso.exists():
                    ctx.info(f"Moving [BOOT] to {tree.boot_dir}")
                    boot_iso.rename(tree.boot_dir)

            _chmod_tree(tree.build_dir, 0o755)
        except OSError as e:
            _reset_dir(tree.build_dir)
            raise StepFailedError(f"ISO extraction failed: {e}") from e
        except (StepFailedError, StepCancelledError):
            _reset_dir(tree.build_dir)
            raise

        ctx.info(f"Extracted to {tree.build_dir}")
        return StepResult()


class ApplyConfigurationStep:
    """Write NoCloud seed files and enable autoinstall on the boot entries."""

    def run(self, ctx: StepContext) -> StepResult:
        build_dir = ctx.tree.build_dir
        codename = _codename(ctx)

        try:
            user_data = render_user_data(ctx.config)
        except UserDataError as e:
            raise StepFailedError(f"Invalid user-data: {e}") from e

        grub_cfg = build_dir / iso.GRUB_CONFIG_PATH
        if not grub_cfg.exists():
            raise StepFailedError(f"{iso.GRUB_CONFIG_PATH} not found in extracted image")

        modified: list[str] = []
        try:
            (build_dir / iso.USER_DATA_FILE).write_text(user_data)
            (build_dir / iso.META_DATA_FILE).write_text("")
            ctx.info("Added user-data and meta-data")

            for relative_path in iso.boot_config_paths(codename):
                insert_text = (
                    iso.ISOLINUX_INSERT_TEXT
                    if relative_path == iso.ISOLINUX_CONFIG_PATH
                    else iso.GRUB_INSERT_TEXT
                )
                if iso.inject_autoinstall_params(build_dir / relative_path, insert_text):
                    modified.append(relative_path)
        except OSError as e:
            raise StepFailedError(f"Failed to apply configuration: {e}") from e

        if modified:
            ctx.info(f"Added autoinstall parameters to {', '.join(modified)}")
        else:
            ctx.warning("Boot entries already carry autoinstall parameters")
        return StepResult({MODIFIED_FILES: modified})


class InstallPackagesStep:
    """Bundle extra packages as an offline APT repository."""

    def run(self, ctx: StepContext) -> StepResult:
        packages = list(ctx.config.packages)
        if not packages:
            ctx.info("No extra packages requested")
            return StepResult({BUNDLED_PACKAGES: 0})

        tree = ctx.tree
        packages_dir = tree.packages_dir
        packages_dir.mkdir(parents=True, exist_ok=True)
        try:
            for package in packages:
                self._download_closure(ctx, package, packages_dir)

            debs = sorted(packages_dir.glob("*.deb"))
            ctx.info(f"Building package index for {len(debs)} packages")
            run_process(
                ["dpkg-scanpackages", "./"],
                ctx,
                cwd=packages_dir,
                stdout_path=packages_dir / PACKAGES_INDEX,
            )
            compress_index(packages_dir)
            write_install_script(tree.script_dir, packages)
        except OSError as e:
            _reset_dir(packages_dir)
            raise StepFailedError(f"Failed to prepare packages: {e}") from e
        except (StepFailedError, StepCancelledError):
            _reset_dir(packages_dir)
            raise

        ctx.info("Extra packages prepared")
        return StepResult({BUNDLED_PACKAGES: len(debs)})

    def _download_closure(self, ctx: StepContext, package: str, dest: Path) -> None:
        ctx.info(f"Resolving dependencies for {package}")
        result = run_process(
            compose_depends_command(package), ctx, echo=False, capture=True
        )
        deps = filter_dependencies(result.output)
        if not deps:
            ctx.warning(f"No dependencies found for {package}")
            return

        ctx.info(f"Downloading {len(deps)} packages for {package}")
        for dep in deps:
            try:
                run_process(["apt-get", "download", dep], ctx, cwd=dest, echo=False)
            except StepFailedError as e:
                ctx.warning(f"Failed to download {dep}: {str(e).splitlines()[0]}")


class ConfigureKernelStep:
    """Boot the HWE kernel when the ISO ships one."""

    def run(self, ctx: StepContext) -> StepResult:
        build_dir = ctx.tree.build_dir
        if not iso.supports_hwe_kernel(build_dir):
            ctx.warning(
                "This source ISO does not support the HWE kernel. "
                "Proceeding with the regular kernel"
            )
            return StepResult({HWE_KERNEL: False})

        try:
            for relative_path in iso.boot_config_paths(_codename(ctx)):
                iso.switch_to_hwe_kernel(build_dir / relative_path)
        except OSError as e:
            raise StepFailedError(f"Failed to configure HWE kernel: {e}") from e
        ctx.info("Destination ISO will use the HWE kernel")
        return StepResult({HWE_KERNEL: True})


class RepackageStep:
    """Rebuild a bootable ISO from the modified tree."""

    def run(self, ctx: StepContext) -> StepResult:
        tree = ctx.tree
        codename = _require_codename(ctx)

        try:
            if ctx.config.md5_checksum:
                updated = iso.refresh_md5sums(tree.build_dir, codename)
                ctx.info(f"Updated md5sum.txt for {', '.join(updated)}")
            else:
                iso.clear_md5sums(tree.build_dir)
                ctx.info("Cleared md5sum.txt")
        except OSError as e:
            raise StepFailedError(f"Failed to update md5sum.txt: {e}") from e

        tree.out_dir.mkdir(parents=True, exist_ok=True)
        output = tree.out_dir / ctx.config.destination_iso
        ctx.info(f"Repackaging as {output.name} ({iso.volume_label(codename)})")
        try:
            run_process(
                iso.compose_xorriso_command(codename, output), ctx, cwd=tree.build_dir
            )
        except (StepFailedError, StepCancelledError):
            output.unlink(missing_ok=True)
            raise
        if not output.is_file():
            raise StepFailedError(f"xorriso did not produce {output.name}")
        return StepResult({OUTPUT_ISO: output})


class FinalizeStep:
    """Write a SHA-256 sidecar for the produced ISO."""

    def run(self, ctx: StepContext) -> StepResult:
        output = _require_output(ctx, OUTPUT_ISO)
        ctx.raise_if_cancelled()
        try:
            digest = compute_file_sha256(output)
            checksum_file = output.with_name(output.name + ".sha256")
            checksum_file.write_text(f"{digest}  {output.name}\n")
        except OSError as e:
            raise StepFailedError(f"Failed to checksum {output.name}: {e}") from e
        ctx.info(f"SHA-256 {digest}")
        return StepResult({OUTPUT_SHA256: digest, CHECKSUM_FILE: checksum_file})


__all__ = [
    "CODENAME",
    "OUTPUT_ISO",
    "OUTPUT_SHA256",
    "SOURCE_ISO",
    "UBUNTU_SIGNING_KEY_ID",
    "AcquireSourceStep",
    "ApplyConfigurationStep",
    "ConfigureKernelStep",
    "ExtractStep",
    "FinalizeStep",
    "InstallPackagesStep",
    "PrepareStep",
    "RepackageStep",
    "VerifyStep",
    "required_tools",
]
