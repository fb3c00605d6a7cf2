"""Document loader: resolve a location into raw PDF bytes.

Supported locations:
- ``http(s)://…``       → one downloaded PDF (Source kind ``url``)
- a directory           → every ``*.pdf`` below it, plus PDFs inside ``*.zip``
- ``archive.zip``       → every ``*.pdf`` entry of the archive
- ``archive.zip/a.pdf`` → that single entry
- ``resume.pdf``        → the file itself

URL security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local ranges before
  any connection is established.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: application/pdf and application/octet-stream.
- Max response body: 20 MB (configurable).
- Timeout: 30 seconds (connect + read).
- Max redirects: 3.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import posixpath
import socket
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from dataclasses import dataclass, field
from http.client import HTTPResponse
from pathlib import Path

from cvsift.db.models import Source
from cvsift.errors import CvSiftError, IngestError, InvalidInput

logger = logging.getLogger(__name__)

_USER_AGENT = "cvsift/0.1"
_MIB = 1024 * 1024
DEFAULT_MAX_BYTES = 20 * _MIB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
_ALLOWED_CONTENT_TYPES = {"application/pdf", "application/octet-stream"}


@dataclass
class RawDocument:
    """Resolved document bytes plus where they came from."""

    file_name: str
    location: str
    data: bytes


class SsrfError(InvalidInput):
    """Raised when a URL resolves to a private or reserved address."""


@dataclass
class LoadedLocation:
    """A resolved location: its Source, readable PDFs, and items that failed."""

    source: Source
    documents: list[RawDocument]
    failed: list[tuple[str, CvSiftError]] = field(default_factory=list)


async def load_documents(
    location: str, max_bytes: int = DEFAULT_MAX_BYTES
) -> tuple[Source, list[RawDocument]]:
    """Resolve *location* into its Source and the PDFs it contains.

    Strict: the first unreadable or oversized item raises.

    Raises:
        InvalidInput: Unsupported location, or a URL that fails validation.
        IngestError: The location could not be read.
    """
    loaded = await load_location(location, max_bytes)
    if loaded.failed:
        raise loaded.failed[0][1]
    return loaded.source, loaded.documents


async def load_location(location: str, max_bytes: int = DEFAULT_MAX_BYTES) -> LoadedLocation:
    """Resolve *location*, collecting per-item failures instead of raising.

    Items found by walking a directory or an archive that cannot be read
    (corrupt zip, oversized file) land in ``failed``. Errors about the
    location itself still raise. File system and network access run in a
    worker thread.
    """
    if not location or not location.strip():
        raise InvalidInput("A document location is required.")
    location = location.strip()
    if urllib.parse.urlparse(location).scheme in _ALLOWED_SCHEMES:
        doc = await asyncio.to_thread(_load_url, location, max_bytes)
        return LoadedLocation(Source.for_origin("url", location), [doc])
    return await asyncio.to_thread(_load_path, location, max_bytes)


# ------------------------------------------------------------------
# Local files
# ------------------------------------------------------------------


def _load_path(location: str, max_bytes: int) -> LoadedLocation:
    path = Path(location).expanduser()

    if path.is_dir():
        root = path.resolve()
        loaded = LoadedLocation(Source.for_origin("file", str(root)), [])
        for child in sorted(root.rglob("*")):
            if not child.is_file():
                continue
            suffix = child.suffix.lower()
            try:
                if suffix == ".pdf":
                    loaded.documents.append(_read_file(child, max_bytes))
                elif suffix == ".zip":
                    docs, failed = _read_zip(child, None, max_bytes)
                    loaded.documents.extend(docs)
                    loaded.failed.extend(failed)
            except CvSiftError as exc:
                logger.warning(f"[loader] skipping {child}: {exc}")
                loaded.failed.append((str(child), exc))
        logger.debug(
            f"[loader] {root}: {len(loaded.documents)} PDF(s) found, "
            f"{len(loaded.failed)} unreadable"
        )
        return loaded

    if path.is_file():
        resolved = path.resolve()
        source = Source.for_origin("file", str(resolved))
        suffix = resolved.suffix.lower()
        if suffix == ".pdf":
            return LoadedLocation(source, [_read_file(resolved, max_bytes)])
        if suffix == ".zip":
            return LoadedLocation(source, *_read_zip(resolved, None, max_bytes))
        raise InvalidInput(
            f"Unsupported file type '{resolved.suffix or resolved.name}'. "
            "Only .pdf files, .zip archives and directories are accepted."
        )

    archive, entry = _split_zip_entry(location)
    if archive is not None:
        resolved = archive.resolve()
        docs, _ = _read_zip(resolved, entry, max_bytes)
        return LoadedLocation(Source.for_origin("file", f"{resolved}/{entry}"), docs)

    raise InvalidInput(f"Location not found: {location}")


def _size_limit(max_bytes: int) -> str:
    if max_bytes >= _MIB and max_bytes % _MIB == 0:
        return f"{max_bytes // _MIB} MB"
    return f"{max_bytes:,} byte"


def _read_file(path: Path, max_bytes: int) -> RawDocument:
    try:
        size = path.stat().st_size
        if size > max_bytes:
            raise InvalidInput(f"'{path}' exceeds the {_size_limit(max_bytes)} limit.")
        data = path.read_bytes()
    except OSError as exc:
        raise IngestError(f"Cannot read '{path}': {exc}", location=str(path)) from exc
    return RawDocument(file_name=path.name, location=str(path), data=data)


def _split_zip_entry(location: str) -> tuple[Path | None, str]:
    """Split ``archive.zip/inner/entry.pdf`` into the archive path and entry name."""
    marker = ".zip/"
    idx = location.lower().find(marker)
    while idx != -1:
        archive = Path(location[: idx + len(".zip")]).expanduser()
        entry = location[idx + len(marker):].strip("/")
        if archive.is_file() and entry:
            return archive, entry
        idx = location.lower().find(marker, idx + 1)
    return None, ""


def _read_zip(
    archive: Path, entry: str | None, max_bytes: int
) -> tuple[list[RawDocument], list[tuple[str, CvSiftError]]]:
    """Read PDF entries from *archive* (all of them, or only *entry*).

    Returns the readable documents and the entries that could not be read.
    A single requested *entry* that cannot be read raises instead.
    """
    docs: list[RawDocument] = []
    failed: list[tuple[str, CvSiftError]] = []
    try:
        with zipfile.ZipFile(archive) as zf:
            if entry is not None:
                try:
                    info = zf.getinfo(entry)
                except KeyError as exc:
                    raise InvalidInput(f"'{entry}' not found in archive '{archive}'.") from exc
                if not entry.lower().endswith(".pdf"):
                    raise InvalidInput(f"Archive entry '{entry}' is not a PDF.")
                infos = [info]
            else:
                infos = [
                    i
                    for i in zf.infolist()
                    if not i.is_dir()
                    and i.filename.lower().endswith(".pdf")
                    and not i.filename.startswith("__MACOSX/")
                ]
            for info in sorted(infos, key=lambda i: i.filename):
                member = f"{archive}/{info.filename}"
                try:
                    docs.append(_read_member(zf, info, member, max_bytes))
                except CvSiftError as exc:
                    if entry is not None:
                        raise
                    logger.warning(f"[loader] skipping {member}: {exc}")
                    failed.append((member, exc))
    except (zipfile.BadZipFile, OSError) as exc:
        raise IngestError(f"Cannot read archive '{archive}': {exc}", location=str(archive)) from exc
    return docs, failed


def _read_member(
    zf: zipfile.ZipFile, info: zipfile.ZipInfo, member: str, max_bytes: int
) -> RawDocument:
    if info.file_size > max_bytes:
        raise InvalidInput(f"'{member}' exceeds the {_size_limit(max_bytes)} limit.")
    try:
        data = zf.read(info)
    except (zipfile.BadZipFile, OSError) as exc:
        raise IngestError(f"Cannot read '{member}': {exc}", location=member) from exc
    return RawDocument(
        file_name=posixpath.basename(info.filename), location=member, data=data
    )


# ------------------------------------------------------------------
# URLs
# ------------------------------------------------------------------


def _load_url(url: str, max_bytes: int) -> RawDocument:
    _validate_scheme(url)
    _check_ssrf(url)
    data = _fetch(url, max_bytes)
    name = posixpath.basename(urllib.parse.urlparse(url).path) or "download.pdf"
    if not name.lower().endswith(".pdf"):
        name = f"{name}.pdf"
    return RawDocument(file_name=name, location=url, data=data)


def _validate_scheme(url: str) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise InvalidInput(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )


def _check_ssrf(url: str) -> None:
    """Resolve the hostname and block private/reserved IP ranges.

    Raises SsrfError if any resolved address is private, loopback,
    link-local, or otherwise reserved.
    """
    hostname = urllib.parse.urlparse(url).hostname
    if not hostname:
        raise InvalidInput(f"URL has no hostname: {url}")

    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise IngestError(f"DNS resolution failed for '{hostname}': {exc}", location=url) from exc

    for addrinfo in addrinfos:
        try:
            ip = ipaddress.ip_address(addrinfo[4][0])
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            raise SsrfError(
                f"URL resolves to private address ({ip}). "
                "Access to internal network addresses is not allowed."
            )


def _fetch(url: str, max_bytes: int) -> bytes:
    """Fetch *url* with timeout, redirect limit, size cap, and Content-Type check."""
    request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    opener = urllib.request.build_opener(_LimitedRedirectHandler(_MAX_REDIRECTS))

    try:
        response: HTTPResponse = opener.open(request, timeout=_TIMEOUT)
    except (urllib.error.URLError, OSError) as exc:
        raise IngestError(f"Failed to fetch URL '{url}': {exc}", location=url) from exc

    with response:
        raw_ct = response.headers.get("Content-Type", "application/pdf")
        ct = raw_ct.split(";")[0].strip().lower()
        if ct not in _ALLOWED_CONTENT_TYPES:
            raise InvalidInput(
                f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
            )
        body = response.read(max_bytes + 1)

    if len(body) > max_bytes:
        raise InvalidInput(
            f"Response body exceeds the {_size_limit(max_bytes)} limit for URL '{url}'."
        )
    logger.debug(f"[loader] fetched {url} ({len(body)} bytes)")
    return body


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Refuse to follow more than *max_redirects* redirects."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise IngestError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'.",
                location=req.full_url,
            )
        _check_ssrf(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)
