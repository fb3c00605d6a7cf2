"""Tests for resolving locations into raw PDF documents."""

from __future__ import annotations

import socket
import zipfile

import pytest

from cvsift.errors import IngestError, InvalidInput
from cvsift.ingest import loader
from cvsift.ingest.loader import SsrfError, load_documents, load_location


def _pdf(path, payload: bytes = b"%PDF-1.4 fake"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path


def _zip(path, entries: dict[str, bytes]):
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


# ---------------------------------------------------------------------------
# Local paths
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_single_pdf(tmp_path):
    pdf = _pdf(tmp_path / "alice.pdf", b"alice")
    source, docs = await load_documents(str(pdf))

    assert source.kind == "file"
    assert source.value == str(pdf.resolve())
    assert [(d.file_name, d.data) for d in docs] == [("alice.pdf", b"alice")]


@pytest.mark.asyncio
async def test_directory_walks_pdfs_and_zips(tmp_path):
    root = tmp_path / "cvs"
    _pdf(root / "a.pdf", b"a")
    _pdf(root / "sub" / "b.pdf", b"b")
    (root / "notes.txt").write_text("ignore me", encoding="utf-8")
    _zip(root / "bundle.zip", {
        "c.pdf": b"c",
        "__MACOSX/._c.pdf": b"junk",
        "readme.txt": b"ignore",
    })

    source, docs = await load_documents(str(root))

    assert source.value == str(root.resolve())
    assert [d.file_name for d in docs] == ["a.pdf", "c.pdf", "b.pdf"]
    assert docs[1].location == f"{(root / 'bundle.zip').resolve()}/c.pdf"


@pytest.mark.asyncio
async def test_zip_archive(tmp_path):
    archive = _zip(tmp_path / "cvs.zip", {"x/bob.pdf": b"bob", "alice.pdf": b"alice"})
    _, docs = await load_documents(str(archive))
    assert [d.file_name for d in docs] == ["alice.pdf", "bob.pdf"]


@pytest.mark.asyncio
async def test_zip_entry_location(tmp_path):
    archive = _zip(tmp_path / "cvs.zip", {"alice.pdf": b"alice", "bob.pdf": b"bob"})

    source, docs = await load_documents(f"{archive}/bob.pdf")

    assert source.value == f"{archive.resolve()}/bob.pdf"
    assert [d.data for d in docs] == [b"bob"]


@pytest.mark.asyncio
async def test_missing_zip_entry(tmp_path):
    archive = _zip(tmp_path / "cvs.zip", {"alice.pdf": b"alice"})
    with pytest.raises(InvalidInput, match="not found"):
        await load_documents(f"{archive}/ghost.pdf")


@pytest.mark.asyncio
async def test_corrupt_zip_is_ingest_error(tmp_path):
    bad = tmp_path / "broken.zip"
    bad.write_bytes(b"PK not really")
    with pytest.raises(IngestError):
        await load_documents(str(bad))


@pytest.mark.asyncio
async def test_unsupported_file_type(tmp_path):
    txt = tmp_path / "cv.txt"
    txt.write_text("hello", encoding="utf-8")
    with pytest.raises(InvalidInput, match="Unsupported file type"):
        await load_documents(str(txt))


@pytest.mark.asyncio
@pytest.mark.parametrize("location", ["", "   "])
async def test_blank_location(location):
    with pytest.raises(InvalidInput):
        await load_documents(location)


@pytest.mark.asyncio
async def test_missing_path(tmp_path):
    with pytest.raises(InvalidInput, match="Location not found"):
        await load_documents(str(tmp_path / "nope.pdf"))


@pytest.mark.asyncio
async def test_file_over_size_limit(tmp_path):
    pdf = _pdf(tmp_path / "big.pdf", b"x" * 2048)
    with pytest.raises(InvalidInput, match="exceeds the 1,024 byte limit"):
        await load_documents(str(pdf), max_bytes=1024)


@pytest.mark.asyncio
async def test_size_limit_reported_in_megabytes(tmp_path):
    pdf = _pdf(tmp_path / "big.pdf", b"x" * (1024 * 1024 + 1))
    with pytest.raises(InvalidInput, match="exceeds the 1 MB limit"):
        await load_documents(str(pdf), max_bytes=1024 * 1024)


# ---------------------------------------------------------------------------
# Tolerant directory walks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_directory_walk_collects_unreadable_items(tmp_path):
    root = tmp_path / "cvs"
    _pdf(root / "a.pdf", b"a")
    _pdf(root / "big.pdf", b"x" * 64)
    (root / "broken.zip").write_bytes(b"PK not really")
    _zip(root / "bundle.zip", {"c.pdf": b"c", "huge.pdf": b"y" * 64})

    loaded = await load_location(str(root), max_bytes=32)

    assert [d.file_name for d in loaded.documents] == ["a.pdf", "c.pdf"]
    failed = {loc.rsplit("/", 1)[-1]: err for loc, err in loaded.failed}
    assert set(failed) == {"big.pdf", "broken.zip", "huge.pdf"}
    assert isinstance(failed["big.pdf"], InvalidInput)
    assert isinstance(failed["broken.zip"], IngestError)
    assert isinstance(failed["huge.pdf"], InvalidInput)


@pytest.mark.asyncio
async def test_load_documents_stays_strict_for_directories(tmp_path):
    root = tmp_path / "cvs"
    _pdf(root / "a.pdf", b"a")
    (root / "broken.zip").write_bytes(b"PK not really")
    with pytest.raises(IngestError, match="broken.zip"):
        await load_documents(str(root))


@pytest.mark.asyncio
async def test_archive_location_collects_oversized_entries(tmp_path):
    archive = _zip(tmp_path / "cvs.zip", {"alice.pdf": b"a", "bob.pdf": b"b" * 64})
    loaded = await load_location(str(archive), max_bytes=32)
    assert [d.file_name for d in loaded.documents] == ["alice.pdf"]
    assert [loc for loc, _ in loaded.failed] == [f"{archive.resolve()}/bob.pdf"]


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url",
    ["http://127.0.0.1/cv.pdf", "http://10.0.0.8/cv.pdf", "http://169.254.169.254/latest"],
)
async def test_private_addresses_blocked(url):
    with pytest.raises(SsrfError):
        await load_documents(url)


class _FakeResponse:
    def __init__(self, body: bytes, content_type: str) -> None:
        self._body = body
        self.headers = {"Content-Type": content_type}

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def read(self, n: int = -1) -> bytes:
        return self._body if n < 0 else self._body[:n]


class _FakeOpener:
    def __init__(self, response: _FakeResponse) -> None:
        self.response = response
        self.requests = []

    def open(self, request, timeout=None):
        self.requests.append((request, timeout))
        return self.response


@pytest.fixture
def public_dns(monkeypatch):
    def fake_getaddrinfo(host, port, *args, **kwargs):
        return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", 0))]

    monkeypatch.setattr(loader.socket, "getaddrinfo", fake_getaddrinfo)


def _install_opener(monkeypatch, response):
    opener = _FakeOpener(response)
    monkeypatch.setattr(loader.urllib.request, "build_opener", lambda *handlers: opener)
    return opener


@pytest.mark.asyncio
async def test_url_download(monkeypatch, public_dns):
    opener = _install_opener(monkeypatch, _FakeResponse(b"%PDF", "application/pdf; charset=binary"))

    source, docs = await load_documents("https://example.com/people/alice")

    assert source.kind == "url"
    assert docs[0].file_name == "alice.pdf"
    assert docs[0].data == b"%PDF"
    request, timeout = opener.requests[0]
    assert timeout == 30
    assert request.get_header("User-agent") == "cvsift/0.1"


@pytest.mark.asyncio
async def test_url_wrong_content_type(monkeypatch, public_dns):
    _install_opener(monkeypatch, _FakeResponse(b"<html>", "text/html"))
    with pytest.raises(InvalidInput, match="Content-Type"):
        await load_documents("https://example.com/cv.pdf")


@pytest.mark.asyncio
async def test_url_body_over_limit(monkeypatch, public_dns):
    _install_opener(monkeypatch, _FakeResponse(b"x" * 100, "application/pdf"))
    with pytest.raises(InvalidInput, match="exceeds"):
        await load_documents("https://example.com/cv.pdf", max_bytes=50)


@pytest.mark.asyncio
async def test_url_dns_failure(monkeypatch):
    def failing(*args, **kwargs):
        raise socket.gaierror("no such host")

    monkeypatch.setattr(loader.socket, "getaddrinfo", failing)
    with pytest.raises(IngestError, match="DNS resolution failed"):
        await load_documents("https://nowhere.invalid/cv.pdf")
