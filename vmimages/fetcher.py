"""Release resolution and checksum-verified downloads for vm-images."""

from __future__ import annotations

import hashlib
import json
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from vmimages.constants import USER_AGENT
from vmimages.exceptions import BuildError, DigestMismatch, DownloadError, InvalidDigest, ReleaseNotFound
from vmimages.models import FetchedArtifact, Settings, SourceSpec
from vmimages.utils import ensure_directory, log, normalize_digest, parse_checksum_file, sha256_file

CHUNK_SIZE = 1024 * 256  # 256 KiB


class ImageFetcher:
    """Resolves artifact sources and downloads them atomically."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # One resolution per repo, so every asset of a run comes from the same release.
        self._latest_tags: Dict[str, str] = {}

    def proxied(self, url: str) -> str:
        if not self.settings.use_proxy or not self.settings.proxy_url:
            return url
        return self.settings.proxy_url.rstrip("/") + "/" + url

    def _open(self, url: str, accept: Optional[str] = None, not_found: Optional[str] = None):
        headers = {"User-Agent": USER_AGENT}
        if accept:
            headers["Accept"] = accept
        target = self.proxied(url)
        log("DEBUG", f"GET {target}")
        try:
            return urlopen(Request(target, headers=headers), timeout=60)
        except HTTPError as exc:
            if exc.code == 404 and not_found:
                raise ReleaseNotFound(not_found)
            raise DownloadError(f"HTTP error fetching {target}: {exc.code} {exc.reason}")
        except URLError as exc:
            raise DownloadError(f"Failed to fetch {target}: {exc.reason}")

    def latest_release_tag(self, repo: str) -> str:
        if repo in self._latest_tags:
            return self._latest_tags[repo]
        api_url = f"{self.settings.github_api}/repos/{repo}/releases/latest"
        log("INFO", f"Resolving latest release of {repo}")
        response = self._open(
            api_url,
            accept="application/vnd.github+json",
            not_found=f"No published release found for {repo}",
        )
        try:
            payload = json.loads(response.read().decode("utf-8") or "{}")
        except ValueError as exc:
            raise ReleaseNotFound(f"Release API returned invalid JSON for {repo}: {exc}")
        tag = payload.get("tag_name") if isinstance(payload, dict) else None
        if not tag:
            raise ReleaseNotFound(f"Release API returned no tag for {repo}")
        log("INFO", f"Latest release: {tag}")
        self._latest_tags[repo] = str(tag)
        return self._latest_tags[repo]

    def release_asset_url(self, repo: str, tag: str, asset: str) -> str:
        return f"{self.settings.github_url}/{repo}/releases/download/{tag}/{asset}"

    def resolve_url(self, source: SourceSpec) -> str:
        if not source.is_release:
            return source.url  # type: ignore[return-value]
        if not (source.repo and source.tag and source.asset):
            raise BuildError("Release sources need a repository, a tag and an asset name")
        tag = source.tag
        if tag == "latest":
            tag = self.latest_release_tag(source.repo)
        return self.release_asset_url(source.repo, tag, source.asset)

    def fetch_digest(self, checksum_url: str) -> str:
        log("INFO", f"Fetching checksum: {checksum_url}")
        response = self._open(checksum_url)
        text = response.read().decode("utf-8", errors="replace")
        return parse_checksum_file(text)

    def _checksum_url(self, source: SourceSpec, url: str) -> Optional[str]:
        if source.checksum_url:
            return source.checksum_url
        if source.is_release:
            return url + ".sha256"
        return None

    def _reuse_cached(self, destination: Path, expected: Optional[str], artifact: FetchedArtifact) -> bool:
        """Reuse ``destination`` if it matches; delete it if it does not."""
        if not destination.is_file():
            return False
        local = sha256_file(destination)
        if expected is None:
            log("WARN", f"Reusing unverified local file {destination} (sha256 {local})")
        elif local != expected:
            log("WARN", f"Cached file {destination} does not match expected digest; removing it")
            destination.unlink(missing_ok=True)
            return False
        else:
            log("INFO", f"Using cached file (sha256 verified): {destination}")
            artifact.verified_digest = local
        artifact.local_path = destination
        artifact.local_digest = local
        artifact.reused = True
        return True

    def fetch(self, source: SourceSpec, destination: Path) -> FetchedArtifact:
        artifact = FetchedArtifact()
        expected = normalize_digest(source.sha256) if source.sha256 else None
        artifact.expected_digest = expected

        if expected is not None and self._reuse_cached(destination, expected, artifact):
            artifact.url = source.url
            return artifact

        url = self.resolve_url(source)
        artifact.url = url
        if expected is None:
            checksum_url = self._checksum_url(source, url)
            if checksum_url:
                expected = self.fetch_digest(checksum_url)
            elif not source.allow_unverified:
                raise InvalidDigest(f"No SHA-256 digest available for {url}")
            else:
                log("WARN", f"No checksum configured for {url}; accepting it unverified")
            artifact.expected_digest = expected
            if self._reuse_cached(destination, expected, artifact):
                return artifact

        digest = self._download(url, destination, expected)
        artifact.local_path = destination
        artifact.local_digest = digest
        if expected is not None:
            artifact.verified_digest = digest
        return artifact

    def _download(self, url: str, destination: Path, expected: Optional[str]) -> str:
        """Stream ``url`` into a temp file, verify it, then move it into place."""
        ensure_directory(destination.parent)
        log("INFO", f"Downloading: {url}")
        response = self._open(url)
        total = response.headers.get("Content-Length")
        total_bytes = int(total) if total else None
        downloaded = 0
        start_time = time.time()
        digest = hashlib.sha256()

        with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=f".{destination.name}.") as tmp:
            tmp_path = Path(tmp.name)
            try:
                while True:
                    chunk = response.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    tmp.write(chunk)
                    digest.update(chunk)
                    downloaded += len(chunk)
                    _print_progress(downloaded, total_bytes, start_time)
                print(flush=True)
            except Exception:
                tmp.close()
                tmp_path.unlink(missing_ok=True)
                raise

        actual = digest.hexdigest()
        if expected is not None and actual != expected:
            tmp_path.unlink(missing_ok=True)
            raise DigestMismatch(f"SHA-256 mismatch for {url}: expected {expected}, got {actual}")
        tmp_path.replace(destination)
        elapsed = time.time() - start_time
        log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s -> {destination}")
        return actual


def _print_progress(downloaded: int, total_bytes: Optional[int], start_time: float) -> None:
    elapsed = time.time() - start_time
    speed = downloaded / elapsed if elapsed > 0 else 0
    downloaded_mb = downloaded / (1024 * 1024)
    if total_bytes:
        pct = downloaded * 100 / total_bytes
        bar_len = 30
        filled = int(bar_len * downloaded / total_bytes)
        bar = "#" * filled + "-" * (bar_len - filled)
        print(
            f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB "
            f"({speed / (1024 * 1024):.1f} MiB/s)",
            end="",
            flush=True,
        )
    else:
        print(f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)", end="", flush=True)
