"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmimages.models import FileSpec, ImageConfig, ImageSettings, Mirrors, Secrets, Settings, UserSpec

SSH_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITestKeyOnly user@host"


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temporary directory."""
    return Settings(
        images_dir=tmp_path / "images",
        output_dir=tmp_path / "output",
        cache_dir=tmp_path / "cache",
        github_repo="gclm/vm-images",
        github_api="https://api.github.com",
        github_url="https://github.com",
        proxy_url="https://ghfast.top/",
    )


@pytest.fixture
def secrets() -> Secrets:
    return Secrets(ssh_public_key=SSH_KEY, root_password="s3cret-pass")


@pytest.fixture
def sample_config() -> ImageConfig:
    return ImageConfig(
        name="debian12",
        version="12",
        source_urls={
            "amd64": "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-genericcloud-amd64.qcow2",
        },
        disk_size="10G",
        settings=ImageSettings(timezone="Asia/Shanghai", hostname="debian", locale="en_US.UTF-8"),
        mirrors=Mirrors(apt="https://mirrors.example.org/debian/"),
        packages=("qemu-guest-agent", "curl"),
        files=(FileSpec(path="/etc/motd", content="Welcome!", permissions="0644"),),
        commands=("systemctl enable qemu-guest-agent", "echo done"),
        users=(UserSpec(name="root"), UserSpec(name="debian")),
    )


@pytest.fixture
def write_config(tmp_path):
    """Write ``images/<name>/config.yaml`` and return the images directory."""

    def _write(name: str, text: str) -> Path:
        images_dir = tmp_path / "images"
        config_dir = images_dir / name
        config_dir.mkdir(parents=True, exist_ok=True)
        (config_dir / "config.yaml").write_text(text)
        return images_dir

    return _write


# Environment variables read by load_settings() and load_secrets().
_ENV_VARS = [
    "IMAGES_DIR",
    "OUTPUT_DIR",
    "CACHE_DIR",
    "GITHUB_REPO",
    "GITHUB_API",
    "GITHUB_URL",
    "GITHUB_PROXY",
    "USE_PROXY",
    "LIBGUESTFS_BACKEND",
    "LIBGUESTFS_BACKEND_SETTINGS",
    "SSH_PUBLIC_KEY",
    "ROOT_PASSWORD",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear the variables vm-images reads and run from an empty directory (no .env)."""
    for key in _ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
