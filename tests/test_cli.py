"""Tests for vmimages.cli module."""

from __future__ import annotations

import hashlib
import io
from pathlib import Path
from unittest.mock import patch

import pytest

from vmimages import cli
from vmimages.exceptions import DownloadError
from vmimages.models import FetchedArtifact, VmHandle

CONFIG = """\
name: debian12
version: "12"
source:
  amd64: https://example.com/debian-12-genericcloud-amd64.qcow2
disk:
  size: 10G
users:
  - name: root
  - name: debian
"""

DIGEST = "ab" * 32

ROCKY_CONFIG = """\
name: rocky10
source:
  amd64: https://example.com/Rocky-10-GenericCloud.qcow2
disk:
  size: 10G
users:
  - name: root
  - name: rocky
"""


@pytest.fixture
def cli_env(clean_env, monkeypatch, tmp_path, write_config):
    images_dir = write_config("debian12", CONFIG)
    monkeypatch.setenv("IMAGES_DIR", str(images_dir))
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path / "output"))
    monkeypatch.setenv("CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("SSH_PUBLIC_KEY", "ssh-ed25519 AAAA test@host")
    monkeypatch.setenv("ROOT_PASSWORD", "pw")
    return tmp_path


class TestList:
    def test_lists_configs(self, cli_env, capsys):
        assert cli.main(["list"]) == 0
        out = capsys.readouterr().out
        assert "debian12" in out
        assert "arch=amd64" in out

    def test_empty_images_dir(self, clean_env, monkeypatch, tmp_path):
        monkeypatch.setenv("IMAGES_DIR", str(tmp_path / "none"))
        with patch("vmimages.cli.log") as mock_log:
            assert cli.main(["list"]) == 0
        level, message = mock_log.call_args[0]
        assert level == "WARN"
        assert "No image configs found" in message


class TestBuild:
    def test_defaults(self, cli_env):
        with patch("vmimages.cli.ImageBuilder") as mock_builder:
            assert cli.main(["build", "debian12"]) == 0
        config, arch, secrets = mock_builder.return_value.build.call_args[0]
        assert config.name == "debian12"
        assert arch == "amd64"
        assert secrets.root_password == "pw"
        assert mock_builder.return_value.build.call_args.kwargs == {"method": "cloudinit"}

    def test_customize_method(self, cli_env):
        with patch("vmimages.cli.ImageBuilder") as mock_builder:
            assert cli.main(["build", "debian12", "arm64", "--method", "customize"]) == 0
        assert mock_builder.return_value.build.call_args[0][1] == "arm64"
        assert mock_builder.return_value.build.call_args.kwargs == {"method": "customize"}

    def test_unknown_config(self, cli_env, capsys):
        assert cli.main(["build", "fedora40"]) == 1
        err = capsys.readouterr().err
        assert "Image config not found" in err
        assert "debian12" in err

    def test_missing_secret(self, cli_env, monkeypatch, capsys):
        monkeypatch.delenv("SSH_PUBLIC_KEY")
        with patch("vmimages.cli.ImageBuilder") as mock_builder:
            assert cli.main(["build", "debian12"]) == 1
        mock_builder.assert_not_called()
        assert "SSH_PUBLIC_KEY environment variable is not set" in capsys.readouterr().err

    def test_invalid_name(self, cli_env, capsys):
        assert cli.main(["build", "../etc"]) == 1
        assert "Invalid image name" in capsys.readouterr().err

    def test_unexpected_error(self, cli_env, capsys):
        with patch("vmimages.cli.ImageBuilder", side_effect=RuntimeError("kaboom")):
            assert cli.main(["build", "debian12"]) == 1
        assert "Unexpected error: kaboom" in capsys.readouterr().err


class TestGenerateCloudInit:
    def test_custom_output_dir(self, cli_env):
        target = cli_env / "seed"
        with patch("vmimages.cli.generate_cloud_init_iso") as mock_generate:
            assert cli.main(["generate-cloud-init", "debian12", str(target)]) == 0
        config, secrets, output_dir = mock_generate.call_args[0]
        assert config.name == "debian12"
        assert output_dir == target
        assert target.is_dir()

    def test_default_output_dir(self, cli_env):
        with patch("vmimages.cli.generate_cloud_init_iso") as mock_generate:
            assert cli.main(["generate-cloud-init", "debian12"]) == 0
        assert mock_generate.call_args[0][2] == cli_env / "output"


@pytest.fixture
def pve():
    """Patch the provisioner and fetcher used by pve-create-template."""
    with patch("vmimages.cli.TemplateProvisioner") as mock_provisioner, patch(
        "vmimages.cli.ImageFetcher"
    ) as mock_fetcher:
        provisioner = mock_provisioner.return_value
        provisioner.vm_exists.return_value = False
        provisioner.provision.side_effect = lambda artifact, iso, spec, secrets=None: VmHandle(
            vmid=spec.vmid, name=spec.name, disk_volume="local-lvm:vm-9000-disk-0", is_template=spec.template
        )
        mock_fetcher.return_value.fetch.side_effect = lambda source, destination: FetchedArtifact(
            url=source.url, local_path=destination
        )
        yield mock_provisioner, mock_fetcher


class TestPveCreateTemplate:
    def test_release_flow(self, cli_env, pve):
        mock_provisioner, mock_fetcher = pve
        assert cli.main(["pve-create-template", "debian12", "amd64", "9000"]) == 0

        fetch_calls = mock_fetcher.return_value.fetch.call_args_list
        image_source, image_dest = fetch_calls[0][0]
        assert image_source.repo == "gclm/vm-images"
        assert image_source.tag == "latest"
        assert image_source.asset == "debian12-amd64.qcow2"
        assert image_source.sha256 is None
        assert image_dest == cli_env / "cache" / "debian12-amd64.qcow2"
        iso_source, iso_dest = fetch_calls[1][0]
        assert iso_source.asset == "debian12-cloudinit.iso"
        assert iso_dest == cli_env / "cache" / "debian12-cloudinit.iso"

        artifact, iso, spec = mock_provisioner.return_value.provision.call_args[0]
        assert artifact == image_dest.resolve()
        assert iso == iso_dest.resolve()
        assert spec.vmid == 9000
        assert spec.name == "debian12-amd64"
        assert spec.storage == "local-lvm"
        assert spec.bridge == "vmbr0"
        assert (spec.memory_mb, spec.cores, spec.disk_size) == (2048, 2, "10G")
        assert spec.template is True
        assert spec.native_cloud_init is False

    def test_options(self, cli_env, pve):
        mock_provisioner, mock_fetcher = pve
        argv = [
            "pve-create-template",
            "debian12",
            "aarch64",
            "9001",
            "--storage",
            "local-zfs",
            "--bridge",
            "vmbr1",
            "--memory",
            "4096",
            "--cores",
            "4",
            "--disk-size",
            "32G",
            "--release",
            "v1.2.0",
            "--repo",
            "me/images",
            "--sha256",
            DIGEST.upper(),
            "--no-template",
            "--proxy",
        ]
        assert cli.main(argv) == 0
        settings = mock_fetcher.call_args[0][0]
        assert settings.use_proxy is True
        image_source = mock_fetcher.return_value.fetch.call_args_list[0][0][0]
        assert image_source.repo == "me/images"
        assert image_source.tag == "v1.2.0"
        assert image_source.asset == "debian12-arm64.qcow2"
        assert image_source.sha256 == DIGEST
        spec = mock_provisioner.return_value.provision.call_args[0][2]
        assert spec.storage == "local-zfs"
        assert spec.bridge == "vmbr1"
        assert (spec.memory_mb, spec.cores, spec.disk_size) == (4096, 4, "32G")
        assert spec.template is False

    def test_image_url(self, cli_env, pve):
        _, mock_fetcher = pve
        argv = ["pve-create-template", "debian12", "amd64", "9000", "--image-url", "https://example.com/custom.qcow2"]
        assert cli.main(argv) == 0
        image_source = mock_fetcher.return_value.fetch.call_args_list[0][0][0]
        assert image_source.url == "https://example.com/custom.qcow2"
        assert image_source.allow_unverified is True

    def test_native_cloud_init(self, cli_env, pve):
        mock_provisioner, mock_fetcher = pve
        argv = ["pve-create-template", "debian12", "amd64", "9000", "--native-cloud-init", "--ci-user", "admin"]
        assert cli.main(argv) == 0
        assert mock_fetcher.return_value.fetch.call_count == 1
        call = mock_provisioner.return_value.provision.call_args
        assert call[0][1] is None
        assert call[0][2].native_cloud_init is True
        assert call[0][2].ci_user == "admin"
        assert call.kwargs["secrets"].root_password == "pw"

    def test_skip_download_reuses_cache(self, cli_env, pve):
        _, mock_fetcher = pve
        cache = cli_env / "cache"
        cache.mkdir()
        (cache / "debian12-amd64.qcow2").write_bytes(b"disk")
        (cache / "debian12-cloudinit.iso").write_bytes(b"iso")
        assert cli.main(["pve-create-template", "debian12", "amd64", "9000", "--skip-download"]) == 0
        mock_fetcher.return_value.fetch.assert_not_called()

    def test_default_cache_paths_reach_qm_absolute(self, cli_env, pve, monkeypatch):
        mock_provisioner, _ = pve
        monkeypatch.delenv("CACHE_DIR")
        cache = cli_env / ".cache"
        cache.mkdir()
        (cache / "debian12-amd64.qcow2").write_bytes(b"disk")
        (cache / "debian12-cloudinit.iso").write_bytes(b"iso")
        assert cli.main(["pve-create-template", "debian12", "amd64", "9000", "--skip-download"]) == 0
        artifact, iso, _ = mock_provisioner.return_value.provision.call_args[0]
        assert artifact.is_absolute() and iso.is_absolute()
        assert artifact == (cache / "debian12-amd64.qcow2").resolve()
        assert iso == (cache / "debian12-cloudinit.iso").resolve()

    def test_native_cloud_init_user_from_config(self, cli_env, pve, write_config):
        mock_provisioner, _ = pve
        write_config("rocky10", ROCKY_CONFIG)
        assert cli.main(["pve-create-template", "rocky10", "amd64", "9000", "--native-cloud-init"]) == 0
        assert mock_provisioner.return_value.provision.call_args[0][2].ci_user == "rocky"

    def test_native_cloud_init_user_without_config(self, cli_env, pve):
        mock_provisioner, _ = pve
        assert cli.main(["pve-create-template", "alpine", "amd64", "9000", "--native-cloud-init"]) == 0
        assert mock_provisioner.return_value.provision.call_args[0][2].ci_user == "debian"

    def test_vmid_in_use_before_download(self, cli_env, pve, capsys):
        mock_provisioner, mock_fetcher = pve
        mock_provisioner.return_value.vm_exists.return_value = True
        assert cli.main(["pve-create-template", "debian12", "amd64", "9000"]) == 1
        mock_fetcher.return_value.fetch.assert_not_called()
        mock_provisioner.return_value.provision.assert_not_called()
        assert "VMID 9000 already exists" in capsys.readouterr().err

    def test_invalid_digest_before_anything(self, cli_env, pve):
        mock_provisioner, mock_fetcher = pve
        assert cli.main(["pve-create-template", "debian12", "amd64", "9000", "--sha256", "a" * 63]) == 1
        mock_provisioner.assert_not_called()
        mock_fetcher.assert_not_called()

    def test_download_error_suggests_proxy(self, cli_env, pve):
        _, mock_fetcher = pve
        mock_fetcher.return_value.fetch.side_effect = DownloadError("Failed to fetch")
        with patch("vmimages.cli.log") as mock_log:
            assert cli.main(["pve-create-template", "debian12", "amd64", "9000"]) == 1
        messages = [c[0] for c in mock_log.call_args_list]
        assert any(level == "WARN" and "--proxy" in message for level, message in messages)
        assert ("ERROR", "Failed to fetch") in messages

    def test_unsupported_arch(self, cli_env, pve):
        assert cli.main(["pve-create-template", "debian12", "riscv64", "9000"]) == 1

    @pytest.mark.parametrize("vmid", ["abc", "0", "-5"])
    def test_invalid_vmid_rejected_by_parser(self, cli_env, vmid):
        with pytest.raises(SystemExit) as exc:
            cli.main(["pve-create-template", "debian12", "amd64", vmid])
        assert exc.value.code == 2


def test_command_is_required():
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 2


def test_shipped_images_listed(clean_env, monkeypatch, capsys):
    monkeypatch.setenv("IMAGES_DIR", str(Path(__file__).resolve().parent.parent / "images"))
    assert cli.main(["list"]) == 0
    out = capsys.readouterr().out
    assert "debian12" in out
    assert "rocky10" in out


GOOD_IMAGE = b"GOOD"
GOOD_SHA = hashlib.sha256(GOOD_IMAGE).hexdigest()
IMAGE_URL = "https://github.com/gclm/vm-images/releases/download/v1.0.0/debian12-amd64.qcow2"


class _FakeResponse:
    def __init__(self, payload: bytes):
        self._buf = io.BytesIO(payload)
        self.headers = {"Content-Length": str(len(payload))}

    def read(self, n: int = -1) -> bytes:
        return self._buf.read(n)


class TestSkipDownloadWithDigest:
    """--skip-download still checks a cached image against an explicit --sha256."""

    ARGV = [
        "pve-create-template",
        "debian12",
        "amd64",
        "9000",
        "--skip-download",
        "--release",
        "v1.0.0",
        "--sha256",
        GOOD_SHA,
    ]

    @pytest.fixture
    def cache(self, cli_env):
        cache = cli_env / "cache"
        cache.mkdir()
        (cache / "debian12-cloudinit.iso").write_bytes(b"iso")
        return cache

    def test_mismatched_cache_is_downloaded_again(self, cache):
        (cache / "debian12-amd64.qcow2").write_bytes(b"CORRUPT")
        requests = []

        def serve(request, timeout=None):
            requests.append(request.full_url)
            return _FakeResponse(GOOD_IMAGE)

        with patch("vmimages.cli.TemplateProvisioner") as mock_provisioner, patch(
            "vmimages.fetcher.urlopen", side_effect=serve
        ):
            mock_provisioner.return_value.vm_exists.return_value = False
            assert cli.main(self.ARGV) == 0
        assert requests == [IMAGE_URL]
        assert (cache / "debian12-amd64.qcow2").read_bytes() == GOOD_IMAGE
        mock_provisioner.return_value.provision.assert_called_once()

    def test_matching_cache_needs_no_network(self, cache):
        (cache / "debian12-amd64.qcow2").write_bytes(GOOD_IMAGE)
        with patch("vmimages.cli.TemplateProvisioner") as mock_provisioner, patch(
            "vmimages.fetcher.urlopen"
        ) as mock_urlopen:
            mock_provisioner.return_value.vm_exists.return_value = False
            assert cli.main(self.ARGV) == 0
        mock_urlopen.assert_not_called()
        mock_provisioner.return_value.provision.assert_called_once()
