"""Fetch a prebuilt lexical index from the latest GitHub release."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from lexicon_pipeline.settings import settings

USER_AGENT = "lexicon-pipeline"


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    download_url: str
    size: int


def format_size(num_bytes: int) -> str:
    if num_bytes >= 1_000_000_000:
        return f"{num_bytes / 1_000_000_000:.2f} GB"
    if num_bytes >= 1_000_000:
        return f"{num_bytes / 1_000_000:.2f} MB"
    if num_bytes >= 1_000:
        return f"{num_bytes / 1_000:.2f} KB"
    return f"{num_bytes} B"


def find_asset(release: dict[str, Any], name: str) -> ReleaseAsset | None:
    for asset in release.get("assets") or []:
        if asset.get("name") == name:
            return ReleaseAsset(
                name=asset["name"],
                download_url=asset["browser_download_url"],
                size=int(asset.get("size") or 0),
            )
    return None


class ReleaseDownloader:
    def __init__(
        self,
        repo: str = settings.release_repo,
        asset_name: str = settings.release_asset_name,
        *,
        timeout: float = settings.download_timeout_s,
        transport: httpx.BaseTransport | None = None,
    ):
        self.repo = repo
        self.asset_name = asset_name
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=transport,
        )

    @property
    def latest_release_url(self) -> str:
        return f"https://api.github.com/repos/{self.repo}/releases/latest"

    def fetch_latest_release(self) -> dict[str, Any]:
        resp = self.client.get(self.latest_release_url, headers={"Accept": "application/vnd.github+json"})
        resp.raise_for_status()
        return resp.json()

    def download(self, url: str, destination: Path, *, expected_size: int = 0) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp = destination.with_suffix(destination.suffix + ".part")
        downloaded = 0
        last_progress = -1
        try:
            with self.client.stream("GET", url) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("Content-Length") or expected_size or 0)
                with tmp.open("wb") as out:
                    for chunk in resp.iter_bytes(chunk_size=1 << 16):
                        out.write(chunk)
                        downloaded += len(chunk)
                        if total > 0:
                            progress = downloaded * 100 // total
                            if progress != last_progress and progress % 10 == 0:
                                print(f"[download]   {progress}% ({format_size(downloaded)} / {format_size(total)})")
                                last_progress = progress
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        tmp.replace(destination)

    def ensure_database(self, output_db_path: Path) -> bool:
        """
        Make sure `output_db_path` exists, downloading the release asset if it does not.

        Returns True when a database was downloaded. Any failure falls back to a fresh database
        (returns False) so that processing can still start.
        """
        if output_db_path.exists():
            print(f"[download] local database found: {output_db_path}; continuing from it")
            return False

        print("[download] no local database; trying the latest GitHub release...")
        try:
            release = self.fetch_latest_release()
            asset = find_asset(release, self.asset_name)
            if asset is None:
                print(f"[download] no {self.asset_name} in release {release.get('tag_name')}; starting fresh")
                return False
            print(
                f"[download] found {asset.name} in release {release.get('tag_name')} ({format_size(asset.size)})"
            )
            self.download(asset.download_url, output_db_path, expected_size=asset.size)
        except (httpx.HTTPError, OSError, ValueError, KeyError) as exc:
            print(f"[download] WARNING failed to download database: {exc}; starting fresh", file=sys.stderr)
            return False

        print(f"[download] download complete: {output_db_path}")
        return True

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> ReleaseDownloader:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
