"""Image build pipeline: fetch, resize, then cloud-init seed or offline customization."""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import List, Optional
from urllib.parse import urlparse

from vmimages.cloudinit import generate_cloud_init_iso
from vmimages.config import require_source
from vmimages.constants import (
    BUILD_METHODS,
    BUILD_TOOLS,
    FALLBACK_NAMESERVERS,
    ISO_TOOLS,
    RHEL_URL_MARKERS,
    ROCKY_UPSTREAM_MIRROR,
)
from vmimages.exceptions import BuildError
from vmimages.fetcher import ImageFetcher
from vmimages.models import ImageConfig, Secrets, Settings, SourceSpec
from vmimages.utils import (
    ensure_directory,
    first_available_tool,
    log,
    normalize_arch,
    require_tools,
    run,
    write_checksum_file,
)


def detect_os_family(source_url: str) -> str:
    lowered = source_url.lower()
    if any(marker in lowered for marker in RHEL_URL_MARKERS):
        return "rhel"
    return "debian"


def _apt_mirror_script(mirror: str) -> str:
    mirror = mirror.rstrip("/")
    components = "main contrib non-free non-free-firmware"
    return (
        ". /etc/os-release; "
        f"printf 'deb {mirror} %s {components}\\n"
        f"deb {mirror} %s-updates {components}\\n"
        f"deb {mirror} %s-backports {components}\\n"
        f"deb {mirror}-security %s-security {components}\\n' "
        '"$VERSION_CODENAME" "$VERSION_CODENAME" "$VERSION_CODENAME" "$VERSION_CODENAME" '
        "> /etc/apt/sources.list"
    )


def customize_args(
    config: ImageConfig,
    image: Path,
    secrets: Secrets,
    secret_dir: Path,
    source_url: str,
) -> List[str]:
    """Build the ``virt-customize`` argument list for ``image``.

    Passwords and file contents are written into ``secret_dir`` and referenced
    by path; the caller owns that directory and removes it afterwards.
    """
    family = detect_os_family(source_url)
    args: List[str] = ["-a", str(image)]
    resolv = " && ".join(
        f"echo 'nameserver {ns}' {'>' if idx == 0 else '>>'} /etc/resolv.conf"
        for idx, ns in enumerate(FALLBACK_NAMESERVERS)
    )

    if family == "debian":
        args += ["--run-command", "dpkg --configure -a || true"]
        args += ["--run-command", f"({resolv}) 2>/dev/null || true"]
        if config.mirrors.apt:
            args += ["--run-command", f"({_apt_mirror_script(config.mirrors.apt)}) 2>/dev/null || true"]
            args += [
                "--run-command",
                "mv /etc/apt/sources.list.d/debian.sources /etc/apt/sources.list.d/debian.sources.bak "
                "2>/dev/null || true",
            ]
        args += ["--run-command", "apt-get update || true"]
    else:
        args += ["--run-command", "dnf clean all || true"]
        if config.mirrors.dnf:
            mirror = config.mirrors.dnf.rstrip("/")
            args += [
                "--run-command",
                f"sed -i 's|{ROCKY_UPSTREAM_MIRROR}|{mirror}|g' /etc/yum.repos.d/*.repo 2>/dev/null || true",
            ]

    if config.packages:
        args += ["--install", ",".join(config.packages)]
    if config.settings.timezone:
        args += ["--timezone", config.settings.timezone]
    if config.settings.hostname:
        args += ["--hostname", config.settings.hostname]

    password_file = secret_dir / "root-password"
    password_file.write_text(secrets.root_password, encoding="utf-8")
    password_file.chmod(0o600)
    args += ["--root-password", f"file:{password_file}"]

    primary = config.primary_user
    if primary is not None:
        admin_group = "sudo" if family == "debian" else "wheel"
        args += ["--run-command", f"useradd -m -s /bin/bash -G {admin_group} {primary.name} 2>/dev/null || true"]
        args += ["--password", f"{primary.name}:file:{password_file}"]
        args += ["--ssh-inject", f"{primary.name}:string:{secrets.ssh_public_key}"]

    for idx, spec in enumerate(config.files):
        local = secret_dir / f"file-{idx}"
        content = spec.content if spec.content.endswith("\n") else spec.content + "\n"
        local.write_text(content, encoding="utf-8")
        # --upload needs the file under its final name; stage it in its own directory.
        staged_dir = secret_dir / f"upload-{idx}"
        staged_dir.mkdir()
        staged = staged_dir / PurePosixPath(spec.path).name
        local.replace(staged)
        args += ["--mkdir", str(PurePosixPath(spec.path).parent)]
        args += ["--upload", f"{staged}:{spec.path}"]
        args += ["--chmod", f"{spec.permissions}:{spec.path}"]

    for command in config.commands:
        args += ["--run-command", command]
    return args


class ImageBuilder:
    """Produces ``<name>-<arch>.qcow2`` (plus a cloud-init ISO) in the output directory."""

    def __init__(self, settings: Settings, fetcher: Optional[ImageFetcher] = None) -> None:
        self.settings = settings
        self.fetcher = fetcher or ImageFetcher(settings)

    def _check_tools(self, method: str) -> None:
        require_tools(BUILD_TOOLS[method])
        if method == "cloudinit":
            first_available_tool(ISO_TOOLS)

    def fetch_source(self, source_url: str) -> Path:
        filename = Path(urlparse(source_url).path).name
        if not filename:
            raise BuildError(f"Cannot derive a cache file name from {source_url}")
        ensure_directory(self.settings.cache_dir)
        artifact = self.fetcher.fetch(
            SourceSpec(url=source_url, allow_unverified=True),
            self.settings.cache_dir / filename,
        )
        assert artifact.local_path is not None
        return artifact.local_path

    def build(self, config: ImageConfig, arch: str, secrets: Secrets, method: str = "cloudinit") -> List[Path]:
        if method not in BUILD_METHODS:
            raise BuildError(f"Unknown build method '{method}'. Supported: {', '.join(BUILD_METHODS)}")
        arch = normalize_arch(arch)
        source_url = require_source(config, arch)
        self._check_tools(method)

        log("INFO", f"Image: {config.name} {config.version}".rstrip())
        log("INFO", f"Architecture: {arch} | Method: {method} | Disk: {config.disk_size}")
        ensure_directory(self.settings.output_dir)

        log("STEP", "Fetching source image")
        cached = self.fetch_source(source_url)

        log("STEP", "Preparing disk image")
        output = self.settings.output_dir / f"{config.name}-{arch}.qcow2"
        shutil.copy2(cached, output)
        run(["qemu-img", "resize", str(output), config.disk_size])
        log("INFO", f"Disk resized to {config.disk_size}")

        produced = [output]
        if method == "cloudinit":
            log("STEP", "Generating cloud-init seed")
            produced.append(generate_cloud_init_iso(config, secrets, self.settings.output_dir))
        else:
            log("STEP", "Customizing image with virt-customize")
            self.customize(config, output, secrets, source_url)
            self.compress(output)

        write_checksum_file(output)
        log("SUCCESS", f"Build complete: {', '.join(str(p) for p in produced)}")
        return produced

    def customize(self, config: ImageConfig, image: Path, secrets: Secrets, source_url: str) -> None:
        env = {
            "LIBGUESTFS_BACKEND": self.settings.libguestfs_backend,
            "LIBGUESTFS_BACKEND_SETTINGS": self.settings.libguestfs_backend_settings,
        }
        log("INFO", f"libguestfs backend: {env['LIBGUESTFS_BACKEND']} ({env['LIBGUESTFS_BACKEND_SETTINGS']})")
        with tempfile.TemporaryDirectory(prefix="vm-images-") as tmpdir:
            args = customize_args(config, image, secrets, Path(tmpdir), source_url)
            run(["virt-customize", *args], env=env)

    def compress(self, image: Path) -> None:
        log("INFO", "Compressing image")
        compressed = image.with_name(image.stem + "-compressed.qcow2")
        try:
            run(["qemu-img", "convert", "-O", "qcow2", "-c", str(image), str(compressed)])
        except BuildError:
            compressed.unlink(missing_ok=True)
            raise
        compressed.replace(image)
