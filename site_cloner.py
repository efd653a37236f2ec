#!/usr/bin/env python3
import argparse
import hashlib
import logging
import os
import re
import sys
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Sequence, Union
from urllib.parse import quote, unquote, urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup, FeatureNotFound, Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "2.0.0"

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

DEFAULT_OUTPUT = "cloned-site"
CHUNK_SIZE = 64 * 1024

# quoted (with backslash escapes) or unquoted body, up to the next unescaped ")"
CSS_URL_RE = re.compile(
    r"""url\(\s*(?:"((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'|((?:[^\s"'()\\]|\\.)*))\s*\)""",
    re.IGNORECASE,
)
# hex escape (1-6 digits, one optional trailing whitespace) or a literal escaped char
CSS_ESCAPE_RE = re.compile(r"\\(?:([0-9a-fA-F]{1,6})(?:\r\n|[ \t\r\n\f])?|(.))", re.DOTALL)
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"\\|?*\x00-\x1f]')

UNFETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:", "about:")
FETCHABLE_SCHEMES = {"http", "https"}

STYLESHEET = "stylesheet"
SCRIPT = "script"
IMAGE = "image"

KIND_ATTRS = {STYLESHEET: "href", SCRIPT: "src", IMAGE: "src"}

# attributes that break file:// loading once the reference is local
DROP_ON_REWRITE = ("integrity", "crossorigin")


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 1
    max_bytes: int = 50_000_000
    retries: int = 0
    by_host: bool = False
    skip_js: bool = False
    index_name: str = "index.html"
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"


# -------------------- Errors --------------------


class CloneError(Exception):
    pass


class InvalidReference(CloneError):
    pass


class UnsafePath(CloneError):
    pass


class FetchFailure(CloneError):
    pass


class StorageFailure(CloneError):
    pass


class FatalFetch(CloneError):
    pass


# -------------------- URL resolver --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u:
        return False
    return not u.lower().startswith(UNFETCHABLE_PREFIXES)


def resolve_reference(raw: str, base: str) -> str:
    ref = (raw or "").strip()
    if not can_fetch_url(ref):
        raise InvalidReference(f"not a fetchable reference: {raw!r}")
    try:
        scheme = urlparse(ref).scheme.lower()
        if scheme and scheme not in FETCHABLE_SCHEMES:
            raise InvalidReference(f"unsupported scheme {scheme!r}: {raw!r}")
        absolute = urldefrag(ref if scheme else urljoin(base, ref))[0]
        parsed = urlparse(absolute)
        parsed.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise InvalidReference(f"malformed reference {raw!r}: {e}") from e
    if parsed.scheme.lower() not in FETCHABLE_SCHEMES or not parsed.hostname:
        raise InvalidReference(f"cannot resolve {raw!r} against {base}")
    return absolute


def sanitize_segment(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def short_h(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()[:8]


# path-only by default: same path on two hosts or queries lands on one file
def local_path_for_url(absolute_url: str, *, by_host: bool = False) -> str:
    try:
        p = urlparse(absolute_url)
    except ValueError as e:
        raise InvalidReference(f"malformed url {absolute_url!r}: {e}") from e
    path = unquote(p.path or "")
    segs: List[str] = []
    for seg in path.replace("\\", "/").split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            if not segs:
                raise UnsafePath(f"path escapes output root: {absolute_url}")
            segs.pop()
            continue
        segs.append(sanitize_segment(seg))
    if not segs or path.endswith("/"):
        segs.append("index")
    if by_host:
        if p.query:
            stem, ext = os.path.splitext(segs[-1])
            segs[-1] = f"{stem}_{short_h(p.query)}{ext}"
        segs.insert(0, sanitize_segment(p.netloc.lower()) or "host")
    return "/".join(segs)


def to_document_path(local_path: str) -> str:
    return quote(local_path, safe="/")


# -------------------- HTTP --------------------


def build_session(
    headers: Optional[Dict[str, str]] = None, retries: int = 0
) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=max(0, retries),
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def apply_headers_to_session(session: requests.Session, extra: Sequence[str]) -> None:
    for h in extra:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()


@dataclass
class Page:
    url: str
    final_url: str
    content: bytes
    text: str


class Fetcher:
    def fetch_page(self, url: str, timeout: float) -> Page:
        raise NotImplementedError

    def fetch(self, url: str, timeout: float) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RequestsFetcher(Fetcher):
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        max_bytes: int = 50_000_000,
    ):
        self.session = session or build_session()
        self.max_bytes = max_bytes

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequestsFetcher":
        session = build_session(retries=settings.retries)
        apply_headers_to_session(session, settings.extra_headers)
        return cls(session, max_bytes=settings.max_bytes)

    def fetch_page(self, url: str, timeout: float) -> Page:
        try:
            r = self.session.get(url, timeout=timeout)
        except requests.RequestException as e:
            raise FatalFetch(f"failed to fetch {url}: {e}") from e
        if r.status_code >= 400:
            raise FatalFetch(f"failed to fetch {url}: HTTP {r.status_code}")
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        return Page(url=url, final_url=r.url or url, content=r.content, text=r.text)

    def fetch(self, url: str, timeout: float) -> bytes:
        try:
            resp = self.session.get(url, timeout=timeout, stream=True)
        except requests.RequestException as e:
            raise FetchFailure(f"{url}: {e}") from e
        try:
            if resp.status_code >= 400:
                raise FetchFailure(f"{url}: HTTP {resp.status_code}")
            cl = resp.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > self.max_bytes:
                raise FetchFailure(f"{url}: too large ({cl} bytes)")
            buf = bytearray()
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                buf.extend(chunk)
                if len(buf) > self.max_bytes:
                    raise FetchFailure(f"{url}: exceeds {self.max_bytes} bytes")
            return bytes(buf)
        except requests.RequestException as e:
            raise FetchFailure(f"{url}: {e}") from e
        finally:
            resp.close()

    def close(self) -> None:
        self.session.close()


# -------------------- Storage --------------------


class StorageSink:
    def write(self, relative_path: str, data: bytes) -> Path:
        raise NotImplementedError


class DirectorySink(StorageSink):
    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()

    def target(self, relative_path: str) -> Path:
        rel = Path(relative_path)
        if not relative_path or rel.is_absolute() or ".." in rel.parts:
            raise UnsafePath(f"refusing to write outside {self.root}: {relative_path!r}")
        return self.root / rel

    def write(self, relative_path: str, data: bytes) -> Path:
        dest = self.target(relative_path)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".tmp_", dir=dest.parent)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, dest)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageFailure(f"cannot write {dest}: {e}") from e
        return dest


# -------------------- HTML utils --------------------


def parse_html(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href", "").strip():
        try:
            return urljoin(fallback, tag["href"].strip())
        except ValueError:
            logging.debug("ignoring malformed <base href=%r>", tag["href"])
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


# -------------------- Harvester --------------------


@dataclass
class AssetReference:
    kind: str
    raw: str
    tag: Tag

    @property
    def attr(self) -> str:
        return KIND_ATTRS[self.kind]


def classify_tag(tag: Tag) -> Optional[str]:
    if tag.name == "link":
        rels = tag.get("rel") or []
        if isinstance(rels, str):
            rels = rels.split()
        if "stylesheet" in {r.lower() for r in rels}:
            return STYLESHEET
        return None
    if tag.name == "script":
        return SCRIPT
    if tag.name == "img":
        return IMAGE
    return None


def harvest(soup: BeautifulSoup, *, skip_js: bool = False) -> List[AssetReference]:
    refs: List[AssetReference] = []
    for tag in soup.find_all(["link", "script", "img"]):
        kind = classify_tag(tag)
        if kind is None or (skip_js and kind == SCRIPT):
            continue
        raw = tag.get(KIND_ATTRS[kind])
        if not raw or not raw.strip():
            continue
        refs.append(AssetReference(kind=kind, raw=raw.strip(), tag=tag))
    return refs


# -------------------- Inline CSS --------------------


def unescape_css(text: str) -> str:
    def repl(m: re.Match) -> str:
        if m.group(1) is None:
            return m.group(2)
        cp = int(m.group(1), 16)
        if cp == 0 or 0xD800 <= cp <= 0xDFFF or cp > 0x10FFFF:
            return "�"
        return chr(cp)

    return CSS_ESCAPE_RE.sub(repl, text)


def rewrite_css_urls(css_text: str, base: str, *, by_host: bool = False) -> str:
    def repl(m: re.Match) -> str:
        body = next((g for g in m.groups() if g is not None), "")
        ref = unescape_css(body).strip()
        if not can_fetch_url(ref):
            return m.group(0)
        try:
            local = local_path_for_url(resolve_reference(ref, base), by_host=by_host)
        except (InvalidReference, UnsafePath) as e:
            logging.debug("leaving css url as-is: %s", e)
            return m.group(0)
        return f'url("{to_document_path(local)}")'

    return CSS_URL_RE.sub(repl, css_text)


def rewrite_inline_css(soup: BeautifulSoup, base: str, *, by_host: bool = False) -> int:
    changed = 0
    for style in soup.find_all("style"):
        if not style.string:
            continue
        new_text = rewrite_css_urls(style.string, base, by_host=by_host)
        if new_text != style.string:
            style.string.replace_with(new_text)
            changed += 1
    for tag in soup.select("[style]"):
        css = tag.get("style")
        if not css:
            continue
        new_css = rewrite_css_urls(css, base, by_host=by_host)
        if new_css != css:
            tag["style"] = new_css
            changed += 1
    return changed


# -------------------- Orchestrator --------------------


@dataclass
class Saved:
    local_path: str


@dataclass
class Failed:
    reason: str


@dataclass
class AssetResult:
    reference: AssetReference
    absolute_url: Optional[str]
    outcome: Union[Saved, Failed]

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Saved)


@dataclass
class CloneReport:
    url: str
    base_url: str
    index_path: Path
    results: List[AssetResult] = field(default_factory=list)

    @property
    def saved(self) -> List[AssetResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[AssetResult]:
        return [r for r in self.results if not r.ok]


class _PathRegistry:
    def __init__(self) -> None:
        self._owners: Dict[str, str] = {}
        self._lock = Lock()

    def claim(self, local_path: str, absolute_url: str) -> None:
        with self._lock:
            owner = self._owners.setdefault(local_path, absolute_url)
        if owner != absolute_url:
            logging.warning(
                "path collision: %s and %s both map to %s (last one wins)",
                owner,
                absolute_url,
                local_path,
            )


def _mirror_one(
    absolute_url: str,
    fetcher: Fetcher,
    sink: StorageSink,
    settings: Settings,
    registry: _PathRegistry,
) -> Union[Saved, Failed]:
    try:
        local_path = local_path_for_url(absolute_url, by_host=settings.by_host)
        data = fetcher.fetch(absolute_url, settings.timeout)
        dest = sink.write(local_path, data)
    except CloneError as e:
        logging.warning("failed to download %s: %s", absolute_url, e)
        return Failed(str(e))
    registry.claim(local_path, absolute_url)
    logging.info("saved %s -> %s", absolute_url, dest)
    return Saved(local_path)


def _apply_rewrite(ref: AssetReference, outcome: Union[Saved, Failed]) -> None:
    if not isinstance(outcome, Saved):
        return
    rel = to_document_path(outcome.local_path)
    frag = urldefrag(ref.raw)[1]
    if frag:
        rel = f"{rel}#{frag}"
    ref.tag[ref.attr] = rel
    for rm in DROP_ON_REWRITE:
        if rm in ref.tag.attrs:
            del ref.tag.attrs[rm]


def mirror_assets(
    references: Sequence[AssetReference],
    base: str,
    fetcher: Fetcher,
    sink: StorageSink,
    settings: Settings,
) -> List[AssetResult]:
    # the pool only fetches and stores; attribute rewrites stay on this thread
    registry = _PathRegistry()
    resolved: List[Optional[str]] = []
    results: List[AssetResult] = []
    for ref in references:
        try:
            resolved.append(resolve_reference(ref.raw, base))
        except InvalidReference as e:
            log = logging.warning if can_fetch_url(ref.raw) else logging.debug
            log("skipping %s reference %r: %s", ref.kind, ref.raw, e)
            resolved.append(None)

    outcomes: Dict[str, Union[Saved, Failed]] = {}
    if settings.workers <= 1:
        for ref, absu in zip(references, resolved):
            if absu is None:
                results.append(AssetResult(ref, None, Failed("invalid reference")))
                continue
            if absu not in outcomes:
                outcomes[absu] = _mirror_one(absu, fetcher, sink, settings, registry)
            _apply_rewrite(ref, outcomes[absu])
            results.append(AssetResult(ref, absu, outcomes[absu]))
        return results

    unique = list(dict.fromkeys(u for u in resolved if u is not None))
    with ThreadPoolExecutor(max_workers=settings.workers) as pool:
        future_map: Dict[Future, str] = {
            pool.submit(_mirror_one, u, fetcher, sink, settings, registry): u
            for u in unique
        }
        try:
            for fut in as_completed(future_map):
                outcomes[future_map[fut]] = fut.result()
        except BaseException:
            for fut in future_map:
                fut.cancel()
            raise
    for ref, absu in zip(references, resolved):
        if absu is None:
            results.append(AssetResult(ref, None, Failed("invalid reference")))
            continue
        _apply_rewrite(ref, outcomes[absu])
        results.append(AssetResult(ref, absu, outcomes[absu]))
    return results


def clone_page(
    url: str,
    output: Union[str, Path] = DEFAULT_OUTPUT,
    settings: Optional[Settings] = None,
    *,
    fetcher: Optional[Fetcher] = None,
    sink: Optional[StorageSink] = None,
) -> CloneReport:
    settings = settings or Settings()
    own_fetcher = fetcher is None
    fetcher = fetcher or RequestsFetcher.from_settings(settings)
    sink = sink or DirectorySink(output)
    try:
        logging.info("GET %s", url)
        page = fetcher.fetch_page(url, settings.timeout)

        index_path = sink.write(settings.index_name, page.content)
        logging.info("saved raw %s", index_path)

        soup = parse_html(page.text)
        base = effective_base_url(soup, page.final_url or url)
        refs = harvest(soup, skip_js=settings.skip_js)
        logging.debug("harvested %d asset references", len(refs))

        results = mirror_assets(refs, base, fetcher, sink, settings)
        changed = rewrite_inline_css(soup, base, by_host=settings.by_host)
        logging.debug("rewrote %d inline css blocks", changed)

        index_path = sink.write(settings.index_name, serialize_html(soup).encode("utf-8"))
    finally:
        if own_fetcher:
            fetcher.close()

    report = CloneReport(url=url, base_url=base, index_path=index_path, results=results)
    logging.info(
        "%d/%d assets saved, %d failed",
        len(report.saved),
        len(report.results),
        len(report.failed),
    )
    for r in report.failed:
        logging.warning("still remote: %s", r.absolute_url or r.reference.raw)
    print("Cloning complete")
    print(f"Open in browser: {index_path}")
    return report


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        if sys.version_info >= (3, 11):
            import tomllib
        else:
            import tomli as tomllib
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="site-cloner",
        description="Clone a web page's HTML, CSS, JS and images for offline use.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    p.add_argument("url", help="http(s) URL of the page to clone")
    p.add_argument(
        "-o", "--output", default=DEFAULT_OUTPUT, help="output folder (default: %(default)s)"
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--workers", type=int, default=1, help="concurrent downloads")
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per file"
    )
    p.add_argument(
        "--retries", type=int, default=0, help="retries for 429/5xx responses"
    )
    p.add_argument(
        "--by-host",
        action="store_true",
        help="store assets under <host>/ and keep query strings apart",
    )
    p.add_argument(
        "--skip-js", action="store_true", help="do not download script files"
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("general", "fetch", "output"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            flat = {k.replace("-", "_"): v for k, v in flat.items()}
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        timeout=max(0.1, args.timeout),
        workers=max(1, args.workers),
        max_bytes=max(1024, args.max_bytes),
        retries=max(0, args.retries),
        by_host=args.by_host,
        skip_js=args.skip_js,
        extra_headers=list(args.header or []),
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    if urlparse(args.url).scheme not in FETCHABLE_SCHEMES:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    settings = settings_from_args(args)
    print(f"Cloning: {args.url}")
    try:
        clone_page(args.url, Path(args.output).resolve(), settings)
    except CloneError as e:
        logging.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
