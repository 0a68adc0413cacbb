"""CLI entry points for vm-images."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional, Tuple

from vmimages.builder import ImageBuilder
from vmimages.cloudinit import generate_cloud_init_iso
from vmimages.config import list_image_configs, load_image_config, load_secrets, load_settings
from vmimages.constants import (
    BUILD_METHODS,
    IMAGE_NAME_RE,
    PVE_DEFAULT_BRIDGE,
    PVE_DEFAULT_CI_USER,
    PVE_DEFAULT_CORES,
    PVE_DEFAULT_DISK_SIZE,
    PVE_DEFAULT_MEMORY_MB,
    PVE_DEFAULT_RELEASE,
    PVE_DEFAULT_STORAGE,
    VMID_RE,
)
from vmimages.exceptions import BuildError, ConfigInvalid, ConfigNotFound, DownloadError, VmIdInUse
from vmimages.fetcher import ImageFetcher
from vmimages.models import Secrets, Settings, SourceSpec, VmSpec
from vmimages.pve import TemplateProvisioner
from vmimages.utils import ensure_directory, log, normalize_arch, normalize_digest, validate_disk_size


def _vmid(raw: str) -> int:
    if not VMID_RE.match(raw or ""):
        raise argparse.ArgumentTypeError(f"invalid VMID '{raw}': must be a positive integer")
    value = int(raw)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"invalid VMID '{raw}': must be a positive integer")
    return value


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{raw}' is not an integer")
    if value <= 0:
        raise argparse.ArgumentTypeError(f"'{raw}' must be greater than zero")
    return value


def _check_image_name(name: str) -> str:
    if not IMAGE_NAME_RE.match(name or ""):
        raise ConfigInvalid(f"Invalid image name '{name}'")
    return name


def list_images(settings: Settings) -> None:
    """Print the image definitions found under the images directory."""
    names = list_image_configs(settings.images_dir)
    if not names:
        log("WARN", f"No image configs found in {settings.images_dir}")
        return
    max_key = max(len(name) for name in names)
    for name in names:
        try:
            cfg = load_image_config(name, settings.images_dir)
        except BuildError as exc:
            print(f"  {name:<{max_key}}  (invalid: {exc})")
            continue
        version = f" {cfg.version}" if cfg.version else ""
        arches = ",".join(sorted(cfg.source_urls))
        print(f"  {name:<{max_key}}  {cfg.name}{version}  (arch={arches}, disk={cfg.disk_size})")


def cmd_build(args: argparse.Namespace, settings: Settings) -> int:
    name = _check_image_name(args.os)
    config = load_image_config(name, settings.images_dir)
    secrets = load_secrets(config)
    ImageBuilder(settings).build(config, args.arch, secrets, method=args.method)
    return 0


def cmd_generate_cloud_init(args: argparse.Namespace, settings: Settings) -> int:
    name = _check_image_name(args.os)
    config = load_image_config(name, settings.images_dir)
    secrets = load_secrets(config)
    output_dir = Path(args.output_dir) if args.output_dir else settings.output_dir
    ensure_directory(output_dir)
    generate_cloud_init_iso(config, secrets, output_dir)
    return 0


def _fetch_release_assets(
    args: argparse.Namespace,
    settings: Settings,
    name: str,
    arch: str,
    expected_sha256: Optional[str],
) -> Tuple[Path, Optional[Path]]:
    repo = args.repo or settings.github_repo
    fetcher = ImageFetcher(settings)
    ensure_directory(settings.cache_dir)

    image_asset = f"{name}-{arch}.qcow2"
    image_path = settings.cache_dir / image_asset
    # fetch() reuses a cached copy only when it matches an explicit digest.
    if args.skip_download and image_path.is_file() and expected_sha256 is None:
        log("INFO", f"Skipping download, using {image_path}")
    else:
        if args.skip_download and not image_path.is_file():
            log("WARN", f"--skip-download given but {image_path} does not exist; downloading")
        if args.image_url:
            source = SourceSpec(url=args.image_url, sha256=expected_sha256, allow_unverified=True)
        else:
            source = SourceSpec(repo=repo, tag=args.release, asset=image_asset, sha256=expected_sha256)
        artifact = fetcher.fetch(source, image_path)
        if artifact.verified:
            log("SUCCESS", f"Image verified: sha256 {artifact.verified_digest}")

    if args.native_cloud_init:
        return image_path.resolve(), None

    iso_asset = f"{name}-cloudinit.iso"
    iso_path = settings.cache_dir / iso_asset
    if args.skip_download and iso_path.is_file():
        log("INFO", f"Skipping download, using {iso_path}")
    else:
        fetcher.fetch(SourceSpec(repo=repo, tag=args.release, asset=iso_asset), iso_path)
    # qm only accepts absolute paths or volume ids.
    return image_path.resolve(), iso_path.resolve()


def _default_ci_user(name: str, settings: Settings) -> str:
    try:
        config = load_image_config(name, settings.images_dir)
    except ConfigNotFound:
        return PVE_DEFAULT_CI_USER
    primary = config.primary_user
    return primary.name if primary is not None else PVE_DEFAULT_CI_USER


def cmd_pve_create_template(args: argparse.Namespace, settings: Settings) -> int:
    name = _check_image_name(args.os)
    arch = normalize_arch(args.arch)
    disk_size = validate_disk_size(args.disk_size)
    # Reject a malformed digest before touching the host or the network.
    expected_sha256 = normalize_digest(args.sha256) if args.sha256 else None
    if args.proxy:
        settings = dataclasses.replace(settings, use_proxy=True)

    secrets: Optional[Secrets] = load_secrets() if args.native_cloud_init else None

    provisioner = TemplateProvisioner()
    provisioner.check_environment()
    if provisioner.vm_exists(args.vmid):
        raise VmIdInUse(f"VMID {args.vmid} already exists")

    log("INFO", f"Image: {name} | Arch: {arch} | VMID: {args.vmid} | Storage: {args.storage}")
    try:
        image_path, iso_path = _fetch_release_assets(args, settings, name, arch, expected_sha256)
    except DownloadError:
        if not settings.use_proxy:
            log("WARN", "Download failed; if github.com is unreachable, retry with --proxy or USE_PROXY=1")
        raise

    spec = VmSpec(
        vmid=args.vmid,
        name=f"{name}-{arch}",
        storage=args.storage,
        bridge=args.bridge,
        memory_mb=args.memory,
        cores=args.cores,
        disk_size=disk_size,
        template=not args.no_template,
        native_cloud_init=args.native_cloud_init,
        ci_user=(args.ci_user or _default_ci_user(name, settings)) if args.native_cloud_init else None,
    )
    handle = provisioner.provision(image_path, iso_path, spec, secrets=secrets)
    if handle.is_template:
        log("INFO", f"Clone with: qm clone {handle.vmid} <new-vmid> --name <name>")
    else:
        log("INFO", f"Start with: qm start {handle.vmid}")
    return 0


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    list_images(settings)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vm-images", description="Build and deploy Proxmox VE cloud images")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p_list = sub.add_parser("list", help="List available image configs")
    p_list.set_defaults(func=cmd_list)

    p_build = sub.add_parser("build", help="Build a disk image from images/<os>/config.yaml")
    p_build.add_argument("os", help="Image config name (directory under images/)")
    p_build.add_argument("arch", nargs="?", default="amd64", help="Target architecture (default: amd64)")
    p_build.add_argument(
        "--method",
        choices=BUILD_METHODS,
        default="cloudinit",
        help="cloudinit: ship a cloud-init ISO (default); customize: bake settings with virt-customize",
    )
    p_build.set_defaults(func=cmd_build)

    p_ci = sub.add_parser("generate-cloud-init", help="Generate the cloud-init ISO for an image config")
    p_ci.add_argument("os", help="Image config name")
    p_ci.add_argument("output_dir", nargs="?", default=None, help="Output directory (default: OUTPUT_DIR)")
    p_ci.set_defaults(func=cmd_generate_cloud_init)

    p_pve = sub.add_parser("pve-create-template", help="Create a Proxmox VE VM template from a released image")
    p_pve.add_argument("os", help="Image name, e.g. debian12")
    p_pve.add_argument("arch", help="amd64 or arm64")
    p_pve.add_argument("vmid", type=_vmid, help="VM ID to create")
    p_pve.add_argument(
        "--storage", default=PVE_DEFAULT_STORAGE, help=f"Target storage (default: {PVE_DEFAULT_STORAGE})"
    )
    p_pve.add_argument("--bridge", default=PVE_DEFAULT_BRIDGE, help=f"Network bridge (default: {PVE_DEFAULT_BRIDGE})")
    p_pve.add_argument("--memory", type=_positive_int, default=PVE_DEFAULT_MEMORY_MB, help="Memory in MiB")
    p_pve.add_argument("--cores", type=_positive_int, default=PVE_DEFAULT_CORES, help="CPU cores")
    p_pve.add_argument("--disk-size", default=PVE_DEFAULT_DISK_SIZE, help="Disk size, e.g. 20G")
    p_pve.add_argument("--release", default=PVE_DEFAULT_RELEASE, help="Release tag (default: latest)")
    p_pve.add_argument("--repo", default=None, help="GitHub repository owner/name (default: GITHUB_REPO)")
    p_pve.add_argument("--image-url", default=None, help="Download the disk image from this URL instead")
    p_pve.add_argument("--sha256", default=None, help="Expected SHA-256 of the disk image")
    p_pve.add_argument("--proxy", action="store_true", help="Route downloads through GITHUB_PROXY")
    p_pve.add_argument("--no-template", action="store_true", help="Leave the VM as a regular VM")
    p_pve.add_argument("--skip-download", action="store_true", help="Reuse files already in the cache directory")
    p_pve.add_argument(
        "--native-cloud-init",
        action="store_true",
        help="Use the Proxmox cloud-init drive instead of the released ISO",
    )
    p_pve.add_argument(
        "--ci-user",
        default=None,
        help=f"Login user for --native-cloud-init (default: first non-root config user, else {PVE_DEFAULT_CI_USER})",
    )
    p_pve.set_defaults(func=cmd_pve_create_template)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
        return args.func(args, settings)
    except BuildError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
