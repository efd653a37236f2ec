from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from site_cloner import DirectorySink, FatalFetch, Fetcher, FetchFailure, Page


class FakeFetcher(Fetcher):
    """In-memory fetcher: ``assets`` maps URL -> bytes, anything else fails."""

    def __init__(
        self,
        html: Optional[str],
        assets: Optional[Dict[str, bytes]] = None,
        final_url: Optional[str] = None,
    ):
        self.html = html
        self.assets = dict(assets or {})
        self.final_url = final_url
        self.requested: List[str] = []
        self.timeouts: List[float] = []

    def fetch_page(self, url: str, timeout: float) -> Page:
        if self.html is None:
            raise FatalFetch(f"failed to fetch {url}: HTTP 404")
        raw = self.html.encode("utf-8")
        return Page(url=url, final_url=self.final_url or url, content=raw, text=self.html)

    def fetch(self, url: str, timeout: float) -> bytes:
        self.requested.append(url)
        self.timeouts.append(timeout)
        if url not in self.assets:
            raise FetchFailure(f"{url}: HTTP 404")
        return self.assets[url]


class RecordingSink(DirectorySink):
    def __init__(self, root: Path):
        super().__init__(root)
        self.writes: List[Tuple[str, bytes]] = []

    def write(self, relative_path: str, data: bytes) -> Path:
        self.writes.append((relative_path, data))
        return super().write(relative_path, data)


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.fixture
def sink(out_dir: Path) -> RecordingSink:
    return RecordingSink(out_dir)
