"""Configuration loading: image definitions, secrets and runtime settings."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from dotenv import load_dotenv

from vmimages.constants import (
    CONFIG_FILE_NAME,
    DEFAULT_CACHE_DIR,
    DEFAULT_FILE_PERMISSIONS,
    DEFAULT_GITHUB_API,
    DEFAULT_GITHUB_PROXY,
    DEFAULT_GITHUB_REPO,
    DEFAULT_GITHUB_URL,
    DEFAULT_IMAGES_DIR,
    DEFAULT_OUTPUT_DIR,
    SUPPORTED_ARCHES,
)
from vmimages.exceptions import ConfigInvalid, ConfigNotFound, MissingSecret
from vmimages.models import FileSpec, ImageConfig, ImageSettings, Mirrors, Secrets, Settings, UserSpec
from vmimages.utils import get_env, get_env_bool, log, normalize_arch, validate_disk_size


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Resolve runtime settings from the environment (and an optional .env file)."""
    dotenv_path = env_file if env_file is not None else Path.cwd() / ".env"
    if dotenv_path.is_file():
        log("INFO", f"Loading environment from {dotenv_path}")
        load_dotenv(dotenv_path, override=False)

    return Settings(
        images_dir=Path(get_env("IMAGES_DIR") or DEFAULT_IMAGES_DIR),
        output_dir=Path(get_env("OUTPUT_DIR") or DEFAULT_OUTPUT_DIR),
        cache_dir=Path(get_env("CACHE_DIR") or DEFAULT_CACHE_DIR),
        github_repo=get_env("GITHUB_REPO") or DEFAULT_GITHUB_REPO,
        github_api=(get_env("GITHUB_API") or DEFAULT_GITHUB_API).rstrip("/"),
        github_url=(get_env("GITHUB_URL") or DEFAULT_GITHUB_URL).rstrip("/"),
        proxy_url=get_env("GITHUB_PROXY") or DEFAULT_GITHUB_PROXY,
        use_proxy=get_env_bool("USE_PROXY", False),
        libguestfs_backend=get_env("LIBGUESTFS_BACKEND") or "direct",
        libguestfs_backend_settings=get_env("LIBGUESTFS_BACKEND_SETTINGS") or "force_tcg",
    )


def list_image_configs(images_dir: Path) -> List[str]:
    if not images_dir.is_dir():
        return []
    return sorted(p.parent.name for p in images_dir.glob(f"*/{CONFIG_FILE_NAME}"))


def _optional_str(data: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise ConfigInvalid(f"'{where}{key}' must be a scalar value")
    value = str(value).strip()
    return value or None


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigInvalid(f"'{key}' must be a mapping")
    return value


def _list(data: Mapping[str, Any], key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigInvalid(f"'{key}' must be a list")
    return value


def _parse_files(raw: list) -> List[FileSpec]:
    files: List[FileSpec] = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigInvalid(f"files[{idx}] must be a mapping with path/content/permissions")
        path = _optional_str(entry, "path", f"files[{idx}].")
        if not path:
            raise ConfigInvalid(f"files[{idx}] is missing 'path'")
        content = entry.get("content")
        content = "" if content is None else str(content)
        permissions = entry.get("permissions")
        if isinstance(permissions, int):
            # Unquoted 0644 in YAML 1.1 loads as an octal int.
            permissions = f"{permissions:04o}"
        permissions = str(permissions).strip() if permissions is not None else DEFAULT_FILE_PERMISSIONS
        if not permissions.isdigit() or len(permissions) > 4:
            raise ConfigInvalid(f"files[{idx}].permissions '{permissions}' must be an octal mode like 0644")
        files.append(FileSpec(path=path, content=content, permissions=permissions))
    return files


def _parse_users(raw: list) -> List[UserSpec]:
    users: List[UserSpec] = []
    for idx, entry in enumerate(raw):
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict):
            raise ConfigInvalid(f"users[{idx}] must be a mapping")
        name = _optional_str(entry, "name", f"users[{idx}].")
        if not name:
            raise ConfigInvalid(f"users[{idx}] is missing 'name'")
        users.append(
            UserSpec(
                name=name,
                password_env=_optional_str(entry, "password_env", f"users[{idx}]."),
                ssh_key_env=_optional_str(entry, "ssh_key_env", f"users[{idx}]."),
            )
        )
    return users


def parse_image_config(data: Any, origin: str = "<config>") -> ImageConfig:
    """Validate a decoded config document and build an ImageConfig."""
    if not isinstance(data, dict):
        raise ConfigInvalid(f"{origin}: top level must be a mapping")

    name = _optional_str(data, "name", "")
    if not name:
        raise ConfigInvalid(f"{origin}: missing required field 'name'")

    source_urls: Dict[str, str] = {}
    for arch, url in _section(data, "source").items():
        if url is None or not str(url).strip():
            continue
        arch_key = str(arch).strip().lower()
        if arch_key not in SUPPORTED_ARCHES:
            raise ConfigInvalid(f"{origin}: source.{arch} is not a supported architecture")
        source_urls[arch_key] = str(url).strip()
    if not source_urls:
        raise ConfigInvalid(f"{origin}: 'source' must define at least one of {', '.join(SUPPORTED_ARCHES)}")

    disk_size = _optional_str(_section(data, "disk"), "size", "disk.")
    if not disk_size:
        raise ConfigInvalid(f"{origin}: missing required field 'disk.size'")
    validate_disk_size(disk_size)

    settings = _section(data, "settings")
    packages = [str(pkg).strip() for pkg in _list(data, "packages") if pkg is not None and str(pkg).strip()]
    commands = [str(cmd) for cmd in _list(data, "commands") if cmd is not None and str(cmd).strip()]

    return ImageConfig(
        name=name,
        version=_optional_str(data, "version", "") or "",
        source_urls=source_urls,
        disk_size=disk_size,
        settings=ImageSettings(
            timezone=_optional_str(settings, "timezone", "settings."),
            hostname=_optional_str(settings, "hostname", "settings."),
            locale=_optional_str(settings, "locale", "settings."),
        ),
        mirrors=Mirrors(
            apt=_optional_str(_section(data, "apt"), "mirror", "apt."),
            dnf=_optional_str(_section(data, "dnf"), "mirror", "dnf."),
        ),
        packages=tuple(packages),
        files=tuple(_parse_files(_list(data, "files"))),
        commands=tuple(commands),
        users=tuple(_parse_users(_list(data, "users"))),
    )


def load_image_config(name: str, images_dir: Path) -> ImageConfig:
    config_path = images_dir / name / CONFIG_FILE_NAME
    if not name or not config_path.is_file():
        available = list_image_configs(images_dir)
        available_list = ", ".join(available) if available else "none"
        raise ConfigNotFound(f"Image config not found: {config_path}\n  Available configs: {available_list}")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigInvalid(f"{config_path} contains invalid YAML: {exc}")
    return parse_image_config(data, origin=str(config_path))


def require_source(config: ImageConfig, arch: str) -> str:
    """Return the source URL for ``arch`` or fail before anything is downloaded."""
    arch = normalize_arch(arch)
    url = config.source_url(arch)
    if not url:
        raise ConfigInvalid(f"Config '{config.name}' defines no source image for architecture {arch}")
    return url


def load_secrets(config: Optional[ImageConfig] = None) -> Secrets:
    """Read the SSH key and root password from the environment.

    The ``root`` user entry may point ``password_env`` at another variable and
    the primary user may do the same with ``ssh_key_env``.
    """
    password_var = "ROOT_PASSWORD"
    key_var = "SSH_PUBLIC_KEY"
    if config is not None:
        if config.root_user is not None and config.root_user.password_env:
            password_var = config.root_user.password_env
        if config.primary_user is not None and config.primary_user.ssh_key_env:
            key_var = config.primary_user.ssh_key_env

    ssh_public_key = (get_env(key_var) or "").strip()
    root_password = get_env(password_var) or ""
    if not ssh_public_key:
        raise MissingSecret(f"{key_var} environment variable is not set")
    if not root_password:
        raise MissingSecret(f"{password_var} environment variable is not set")
    return Secrets(ssh_public_key=ssh_public_key, root_password=root_password)
