"""cloud-init NoCloud seed generation for vm-images."""

from __future__ import annotations

import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmimages.constants import (
    CLOUD_INIT_HEADER,
    CLOUD_INIT_VOLUME_LABEL,
    DEFAULT_LOCAL_HOSTNAME,
    INSTANCE_ID_TIME_FORMAT,
    ISO_TOOLS,
    NETWORK_CONFIG,
    SUDO_RULE,
)
from vmimages.exceptions import MissingSecret
from vmimages.models import CloudInitDocument, ImageConfig, Secrets
from vmimages.utils import ensure_directory, first_available_tool, hash_password, log, run, write_checksum_file


class _LiteralStr(str):
    """Emitted as a ``|`` block scalar."""


class _QuotedStr(str):
    """Emitted single-quoted so modes like 0644 stay strings."""


class _CloudConfigDumper(yaml.SafeDumper):
    pass


def _represent_literal(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    return dumper.represent_scalar("tag:yaml.org,2002:str", str(data), style="|")


def _represent_quoted(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    return dumper.represent_scalar("tag:yaml.org,2002:str", str(data), style="'")


_CloudConfigDumper.add_representer(_LiteralStr, _represent_literal)
_CloudConfigDumper.add_representer(_QuotedStr, _represent_quoted)


def dump_yaml(data: Dict[str, Any]) -> str:
    return yaml.dump(
        data,
        Dumper=_CloudConfigDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )


class CloudInitSynthesizer:
    """Maps an ImageConfig plus out-of-band secrets onto a cloud-init data set."""

    def __init__(self, config: ImageConfig) -> None:
        self.config = config

    def build_user_data(self, secrets: Secrets) -> Dict[str, Any]:
        cfg = self.config
        settings = cfg.settings
        passwd_hash = hash_password(secrets.root_password)

        user_data: Dict[str, Any] = {}
        if settings.hostname:
            user_data["hostname"] = settings.hostname
            user_data["manage_etc_hosts"] = True
        if settings.timezone:
            user_data["timezone"] = settings.timezone
        if settings.locale:
            user_data["locale"] = settings.locale

        users: List[Dict[str, Any]] = [
            {
                "name": "root",
                "lock_passwd": False,
                "hashed_passwd": passwd_hash,
            }
        ]
        primary = cfg.primary_user
        if primary is not None:
            users.append(
                {
                    "name": primary.name,
                    "sudo": SUDO_RULE,
                    "shell": "/bin/bash",
                    "lock_passwd": False,
                    "hashed_passwd": passwd_hash,
                    "ssh_authorized_keys": [secrets.ssh_public_key],
                }
            )
        user_data["users"] = users
        user_data["ssh_pwauth"] = True
        user_data["disable_root"] = False

        if cfg.packages:
            user_data["packages"] = list(cfg.packages)

        if cfg.files:
            write_files = []
            for spec in cfg.files:
                content = spec.content if spec.content.endswith("\n") else spec.content + "\n"
                write_files.append(
                    {
                        "path": spec.path,
                        "permissions": _QuotedStr(spec.permissions),
                        "content": _LiteralStr(content),
                    }
                )
            user_data["write_files"] = write_files

        if cfg.commands:
            user_data["runcmd"] = list(cfg.commands)

        if cfg.mirrors.apt:
            mirror = cfg.mirrors.apt.rstrip("/")
            user_data["apt"] = {
                "primary": [{"arches": ["default"], "uri": mirror}],
                "security": [{"arches": ["default"], "uri": f"{mirror}-security"}],
            }
        return user_data

    def build_meta_data(self, instance_id: str) -> Dict[str, Any]:
        return {
            "instance-id": instance_id,
            "local-hostname": self.config.settings.hostname or DEFAULT_LOCAL_HOSTNAME,
        }

    def new_instance_id(self, now: Optional[datetime] = None) -> str:
        # A fresh id makes cloud-init re-run first-boot configuration on reused disks.
        now = now or datetime.now()
        return f"{self.config.name}-{now.strftime(INSTANCE_ID_TIME_FORMAT)}"

    def synthesize(self, secrets: Secrets, now: Optional[datetime] = None) -> CloudInitDocument:
        if not secrets.ssh_public_key or not secrets.ssh_public_key.strip():
            raise MissingSecret("SSH public key is required to generate cloud-init data")
        if not secrets.root_password:
            raise MissingSecret("Root password is required to generate cloud-init data")

        instance_id = self.new_instance_id(now)
        user_data = f"{CLOUD_INIT_HEADER}\n" + dump_yaml(self.build_user_data(secrets))
        return CloudInitDocument(
            instance_id=instance_id,
            user_data=user_data,
            meta_data=dump_yaml(self.build_meta_data(instance_id)),
            network_config=dump_yaml(NETWORK_CONFIG),
        )

    def write_iso(self, document: CloudInitDocument, output_iso: Path) -> Path:
        """Pack the seed files into a ``cidata`` ISO and write its checksum."""
        tool = first_available_tool(ISO_TOOLS)
        ensure_directory(output_iso.parent)
        with tempfile.TemporaryDirectory(prefix="cidata-") as tmpdir:
            staging = Path(tmpdir)
            for filename, content in document.files().items():
                (staging / filename).write_text(content, encoding="utf-8")
            log("INFO", f"Generating cloud-init ISO: {output_iso}")
            run(
                [
                    tool,
                    "-quiet",
                    "-output",
                    str(output_iso),
                    "-volid",
                    CLOUD_INIT_VOLUME_LABEL,
                    "-joliet",
                    "-rock",
                    str(staging),
                ]
            )
        write_checksum_file(output_iso)
        log("SUCCESS", f"cloud-init ISO ready: {output_iso}")
        return output_iso


def generate_cloud_init_iso(config: ImageConfig, secrets: Secrets, output_dir: Path) -> Path:
    synthesizer = CloudInitSynthesizer(config)
    document = synthesizer.synthesize(secrets)
    log("INFO", f"instance-id: {document.instance_id}")
    return synthesizer.write_iso(document, output_dir / f"{config.name}-cloudinit.iso")
