"""Data models for vm-images."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vmimages.constants import DEFAULT_FILE_PERMISSIONS


@dataclass(frozen=True)
class FileSpec:
    path: str
    content: str
    permissions: str = DEFAULT_FILE_PERMISSIONS


@dataclass(frozen=True)
class UserSpec:
    name: str
    password_env: Optional[str] = None
    ssh_key_env: Optional[str] = None


@dataclass(frozen=True)
class ImageSettings:
    timezone: Optional[str] = None
    hostname: Optional[str] = None
    locale: Optional[str] = None


@dataclass(frozen=True)
class Mirrors:
    apt: Optional[str] = None
    dnf: Optional[str] = None


@dataclass(frozen=True)
class ImageConfig:
    name: str
    source_urls: Dict[str, str]
    disk_size: str
    version: str = ""
    settings: ImageSettings = field(default_factory=ImageSettings)
    mirrors: Mirrors = field(default_factory=Mirrors)
    packages: Tuple[str, ...] = ()
    files: Tuple[FileSpec, ...] = ()
    commands: Tuple[str, ...] = ()
    users: Tuple[UserSpec, ...] = ()

    @property
    def primary_user(self) -> Optional[UserSpec]:
        """First non-root user; the login account of the image."""
        for user in self.users:
            if user.name != "root":
                return user
        return None

    @property
    def root_user(self) -> Optional[UserSpec]:
        for user in self.users:
            if user.name == "root":
                return user
        return None

    def source_url(self, arch: str) -> Optional[str]:
        return self.source_urls.get(arch)


@dataclass(frozen=True)
class Secrets:
    ssh_public_key: str
    root_password: str


@dataclass(frozen=True)
class CloudInitDocument:
    instance_id: str
    user_data: str
    meta_data: str
    network_config: str

    def files(self) -> Dict[str, str]:
        return {
            "user-data": self.user_data,
            "meta-data": self.meta_data,
            "network-config": self.network_config,
        }


@dataclass(frozen=True)
class SourceSpec:
    """Where an artifact comes from: a direct URL or a release asset."""

    url: Optional[str] = None
    repo: Optional[str] = None
    tag: Optional[str] = None
    asset: Optional[str] = None
    sha256: Optional[str] = None
    checksum_url: Optional[str] = None
    allow_unverified: bool = False

    @property
    def is_release(self) -> bool:
        return self.url is None


@dataclass
class FetchedArtifact:
    url: Optional[str] = None
    local_path: Optional[Path] = None
    expected_digest: Optional[str] = None
    verified_digest: Optional[str] = None
    local_digest: Optional[str] = None
    reused: bool = False

    @property
    def verified(self) -> bool:
        return self.verified_digest is not None and self.verified_digest == self.expected_digest


@dataclass(frozen=True)
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class VmSpec:
    vmid: int
    name: str
    storage: str
    bridge: str
    memory_mb: int
    cores: int
    disk_size: str
    template: bool = True
    native_cloud_init: bool = False
    ci_user: Optional[str] = None


@dataclass
class VmHandle:
    vmid: int
    name: str
    disk_volume: str
    is_template: bool = False


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved once from the environment."""

    images_dir: Path
    output_dir: Path
    cache_dir: Path
    github_repo: str
    github_api: str
    github_url: str
    proxy_url: str
    use_proxy: bool = False
    libguestfs_backend: str = "direct"
    libguestfs_backend_settings: str = "force_tcg"
