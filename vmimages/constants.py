"""Global constants and default paths for vm-images."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_IMAGES_DIR = Path("images")
DEFAULT_OUTPUT_DIR = Path("output")
DEFAULT_CACHE_DIR = Path(".cache")
CONFIG_FILE_NAME = "config.yaml"

DEFAULT_GITHUB_REPO = "gclm/vm-images"
DEFAULT_GITHUB_API = "https://api.github.com"
DEFAULT_GITHUB_URL = "https://github.com"
DEFAULT_GITHUB_PROXY = "https://ghfast.top/"
USER_AGENT = "vm-images/1.0"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

SUPPORTED_ARCHES = ("amd64", "arm64")
ARCH_ALIASES = {
    "x86_64": "amd64",
    "x86-64": "amd64",
    "aarch64": "arm64",
}

DISK_SIZE_RE = re.compile(r"^(\d+)([KMGTkmgt]?)$")
SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
VMID_RE = re.compile(r"^\d+$")
IMAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# cloud-init's NoCloud datasource only scans volumes carrying this label.
CLOUD_INIT_VOLUME_LABEL = "cidata"
CLOUD_INIT_HEADER = "#cloud-config"
DEFAULT_LOCAL_HOSTNAME = "cloud-instance"
DEFAULT_FILE_PERMISSIONS = "0644"
SUDO_RULE = "ALL=(ALL) NOPASSWD:ALL"
INSTANCE_ID_TIME_FORMAT = "%Y%m%d%H%M%S%f"

NETWORK_CONFIG = {
    "version": 2,
    "ethernets": {
        "id0": {
            "match": {"driver": "virtio*"},
            "dhcp4": True,
            "dhcp6": False,
        },
    },
}

ISO_TOOLS = ("genisoimage", "mkisofs")
BUILD_TOOLS = {
    "cloudinit": ("qemu-img",),
    "customize": ("qemu-img", "virt-customize"),
}
BUILD_METHODS = tuple(BUILD_TOOLS)

RHEL_URL_MARKERS = ("rocky", "centos", "rhel", "almalinux")
ROCKY_UPSTREAM_MIRROR = "https://dl.rockylinux.org"
FALLBACK_NAMESERVERS = ("8.8.8.8", "8.8.4.4")

PVE_VMLIST = Path("/etc/pve/.vmlist")
PVE_DEFAULT_STORAGE = "local-lvm"
PVE_DEFAULT_BRIDGE = "vmbr0"
PVE_DEFAULT_MEMORY_MB = 2048
PVE_DEFAULT_CORES = 2
PVE_DEFAULT_DISK_SIZE = "10G"
PVE_DEFAULT_RELEASE = "latest"
PVE_DEFAULT_CI_USER = "debian"
PVE_UNUSED_DISK_RE = re.compile(r"^unused\d+:\s*(\S+)", re.MULTILINE)
