"""Proxmox VE VM/template provisioning through the ``qm`` and ``pvesm`` CLIs."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import List, Optional

from vmimages.constants import PVE_UNUSED_DISK_RE, PVE_VMLIST
from vmimages.exceptions import BuildError, MissingSecret, StorageNotFound, ToolMissing, VmIdInUse
from vmimages.models import Secrets, VmHandle, VmSpec
from vmimages.utils import log, require_tools, run


class TemplateProvisioner:
    """Creates a VM from a disk image and optionally converts it to a template.

    There is no rollback: the first failing ``qm`` call aborts the run and the
    half-configured VM is left in place for inspection.
    """

    def __init__(self, vmlist_path: Path = PVE_VMLIST) -> None:
        self.vmlist_path = vmlist_path

    def check_environment(self) -> None:
        if not self.vmlist_path.exists():
            raise ToolMissing(f"Not a Proxmox VE host ({self.vmlist_path} not found)")
        require_tools(["qm", "pvesm"])

    def vm_exists(self, vmid: int) -> bool:
        return run(["qm", "status", str(vmid)], check=False).ok

    def check_storage(self, storage: str) -> None:
        result = run(["pvesm", "status", "--storage", storage], check=False)
        if not result.ok:
            raise StorageNotFound(f"Storage '{storage}' not found")

    def _qm(self, vmid: int, *args: str, mask: Optional[List[str]] = None) -> None:
        run(["qm", args[0], str(vmid), *args[1:]], mask=mask or ())

    def _imported_volume(self, spec: VmSpec) -> str:
        config = run(["qm", "config", str(spec.vmid)]).stdout
        match = PVE_UNUSED_DISK_RE.search(config)
        if match:
            return match.group(1).split(",")[0]
        return f"{spec.storage}:vm-{spec.vmid}-disk-0"

    def provision(
        self,
        artifact: Path,
        cloud_init_iso: Optional[Path],
        spec: VmSpec,
        secrets: Optional[Secrets] = None,
    ) -> VmHandle:
        if spec.native_cloud_init:
            if secrets is None:
                raise MissingSecret("Built-in cloud-init needs SSH_PUBLIC_KEY and ROOT_PASSWORD")
        elif cloud_init_iso is None:
            raise BuildError("A cloud-init ISO is required unless built-in cloud-init is used")

        # qm resolves relative paths against its own cwd, not ours.
        artifact = Path(artifact).resolve()
        if cloud_init_iso is not None:
            cloud_init_iso = Path(cloud_init_iso).resolve()

        self.check_environment()
        if self.vm_exists(spec.vmid):
            raise VmIdInUse(f"VMID {spec.vmid} already exists")
        self.check_storage(spec.storage)

        log("STEP", f"Creating VM {spec.vmid} ({spec.name})")
        self._qm(
            spec.vmid,
            "create",
            "--name",
            spec.name,
            "--memory",
            str(spec.memory_mb),
            "--cores",
            str(spec.cores),
            "--cpu",
            "host",
            "--net0",
            f"virtio,bridge={spec.bridge}",
            "--scsihw",
            "virtio-scsi-pci",
            "--ostype",
            "l26",
        )

        log("STEP", f"Importing disk {artifact} into {spec.storage}")
        self._qm(spec.vmid, "importdisk", str(artifact), spec.storage)
        volume = self._imported_volume(spec)

        log("STEP", f"Attaching {volume} as scsi0")
        self._qm(spec.vmid, "set", "--scsi0", volume)
        log("INFO", f"Resizing scsi0 to {spec.disk_size}")
        self._qm(spec.vmid, "resize", "scsi0", spec.disk_size)
        self._qm(spec.vmid, "set", "--boot", "order=scsi0")
        self._qm(spec.vmid, "set", "--serial0", "socket", "--vga", "serial0")
        self._qm(spec.vmid, "set", "--agent", "enabled=1")

        if spec.native_cloud_init:
            self._attach_native_cloud_init(spec, secrets)  # type: ignore[arg-type]
        else:
            log("STEP", f"Attaching cloud-init ISO {cloud_init_iso}")
            self._qm(spec.vmid, "set", "--ide2", f"{cloud_init_iso},media=cdrom")

        handle = VmHandle(vmid=spec.vmid, name=spec.name, disk_volume=volume)
        if spec.template:
            # Templates are never booted, so no first-boot state ends up in the clone source.
            log("STEP", f"Converting VM {spec.vmid} to a template")
            self._qm(spec.vmid, "template")
            handle.is_template = True
        else:
            log("INFO", "Skipping template conversion (--no-template)")
        log("SUCCESS", f"VM {spec.vmid} ready{' as template' if handle.is_template else ''}")
        return handle

    def _attach_native_cloud_init(self, spec: VmSpec, secrets: Secrets) -> None:
        log("STEP", "Configuring built-in cloud-init drive")
        self._qm(spec.vmid, "set", "--ide2", f"{spec.storage}:cloudinit")
        if spec.ci_user:
            self._qm(spec.vmid, "set", "--ciuser", spec.ci_user)
        self._qm(spec.vmid, "set", "--cipassword", secrets.root_password, mask=[secrets.root_password])
        with tempfile.TemporaryDirectory(prefix="pve-ci-") as tmpdir:
            keyfile = Path(tmpdir) / "authorized_keys"
            keyfile.write_text(secrets.ssh_public_key.strip() + "\n", encoding="utf-8")
            self._qm(spec.vmid, "set", "--sshkeys", str(keyfile))
        self._qm(spec.vmid, "set", "--ipconfig0", "ip=dhcp")
