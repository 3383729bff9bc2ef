"""
Tests for XMLTV parsing and bounded guide download.
"""
import asyncio

import httpx
import pytest
from lxml import etree

from conftest import BBC_GUIDE, gzip_bytes, mock_client, streamed, utc
from tvcatalog.config import settings
from tvcatalog.services.guide_parser_service import (
    GuideTooLargeError,
    build_guide_snapshot,
    download_guide,
    load_guide,
    parse_xmltv_bytes,
    probe_guide_size,
)
from tvcatalog.utils.timezone import DateFormatError, parse_xmltv_time


GUIDE_URL = "http://e.example/guide.xml"
GZ_URL = "http://e.example/guide.xml.gz"


def programme(channel='channel="bbc1"', start='start="20240101120000 +0000"',
              stop='stop="20240101130000 +0000"', body="<title>News</title>") -> bytes:
    return f"<tv><programme {channel} {start} {stop}>{body}</programme></tv>".encode()


class TestParseXmltvTime:
    """XMLTV timestamp parsing."""

    def test_utc_offset(self):
        assert parse_xmltv_time("20240101120000 +0000") == utc(2024, 1, 1, 12, 0)

    def test_positive_offset_is_applied(self):
        assert parse_xmltv_time("20240101120000 +0200") == utc(2024, 1, 1, 10, 0)

    def test_negative_offset_is_applied(self):
        assert parse_xmltv_time("20080715003000 -0600") == utc(2008, 7, 15, 6, 30)

    def test_missing_offset_means_utc(self):
        assert parse_xmltv_time("20240101120000") == utc(2024, 1, 1, 12, 0)

    @pytest.mark.parametrize("value", [None, "", "2024", "20241301120000 +0000", "abc"])
    def test_invalid(self, value):
        with pytest.raises(DateFormatError):
            parse_xmltv_time(value)


class TestParseXmltvBytes:
    """Programme index construction."""

    def test_groups_by_channel_in_document_order(self):
        index = parse_xmltv_bytes(BBC_GUIDE)

        assert index.programme_count == 2
        assert index.channel_count == 1
        entries = index.candidates("bbc1")
        assert [e.title for e in entries] == ["News", "Weather"]
        assert entries[0].description == "The latest headlines"
        assert entries[0].start == utc(2024, 1, 1, 12, 0)
        assert entries[0].stop == utc(2024, 1, 1, 13, 0)
        assert entries[0].start.tzinfo is not None

    def test_missing_title_and_description_defaults(self):
        entry = parse_xmltv_bytes(programme(body="")).candidates("bbc1")[0]
        assert entry.title == "Unknown"
        assert entry.description == ""

    def test_channel_key_is_normalized(self):
        index = parse_xmltv_bytes(programme(channel='channel="BBC One-HD.uk"'))
        entry = index.candidates("bbconehd.uk")[0]
        assert entry.channel_ref == "BBC One-HD.uk"

    @pytest.mark.parametrize("kwargs", [
        {"channel": ""},
        {"channel": 'channel="  "'},
        {"start": ""},
        {"stop": 'stop="tomorrow"'},
    ])
    def test_incomplete_programmes_are_dropped(self, kwargs):
        assert parse_xmltv_bytes(programme(**kwargs)).programme_count == 0

    def test_single_programme_root(self):
        data = b'<programme channel="a" start="20240101120000" stop="20240101130000"><title>X</title></programme>'
        assert parse_xmltv_bytes(data).candidates("a")[0].title == "X"

    def test_malformed_xml_raises(self):
        with pytest.raises(etree.XMLSyntaxError):
            parse_xmltv_bytes(b"<tv><programme></tv>")

    def test_external_entities_are_not_resolved(self):
        data = (
            b'<?xml version="1.0"?>'
            b'<!DOCTYPE tv [<!ENTITY x SYSTEM "file:///etc/passwd">]>'
            b'<tv><programme channel="a" start="20240101120000" stop="20240101130000">'
            b"<title>&x;</title></programme></tv>"
        )
        entry = parse_xmltv_bytes(data).candidates("a")[0]
        assert "root:" not in entry.title


@pytest.mark.asyncio
class TestDownloadGuide:
    """Streaming download with inline decompression."""

    async def download(self, routes, url=GUIDE_URL, max_declared=1 << 20, max_buffer=1 << 20):
        async with mock_client(routes) as client:
            return await download_guide(
                client, url, max_declared_bytes=max_declared, max_buffer_bytes=max_buffer
            )

    async def test_plain_body(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE, chunk_size=50)}
        assert await self.download(routes) == BBC_GUIDE

    async def test_gzip_by_extension(self):
        routes = {("GET", GZ_URL): lambda request: streamed(gzip_bytes(BBC_GUIDE), chunk_size=7)}
        assert await self.download(routes, url=GZ_URL) == BBC_GUIDE

    async def test_gzip_by_content_encoding(self):
        routes = {
            ("GET", GUIDE_URL): lambda request: streamed(
                gzip_bytes(BBC_GUIDE), headers={"Content-Encoding": "gzip"}
            ),
        }
        assert await self.download(routes) == BBC_GUIDE

    async def test_gz_extension_with_plain_payload(self):
        routes = {("GET", GZ_URL): lambda request: streamed(BBC_GUIDE)}
        assert await self.download(routes, url=GZ_URL) == BBC_GUIDE

    async def test_multi_member_gzip(self):
        first, second = BBC_GUIDE[:100], BBC_GUIDE[100:]
        routes = {("GET", GZ_URL): lambda request: streamed(gzip_bytes(first) + gzip_bytes(second))}
        assert await self.download(routes, url=GZ_URL) == BBC_GUIDE

    async def test_declared_size_ceiling(self):
        routes = {
            ("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE, headers={"Content-Length": "5000000"}),
        }
        with pytest.raises(GuideTooLargeError):
            await self.download(routes, max_declared=1000)

    async def test_buffer_ceiling_on_plain_body(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE, chunk_size=64)}
        with pytest.raises(GuideTooLargeError):
            await self.download(routes, max_buffer=100)

    async def test_buffer_ceiling_applies_to_inflated_size(self):
        bomb = gzip_bytes(b"<tv>" + b" " * 200_000 + b"</tv>")
        assert len(bomb) < 2000
        routes = {("GET", GZ_URL): lambda request: streamed(bomb)}
        with pytest.raises(GuideTooLargeError):
            await self.download(routes, url=GZ_URL, max_declared=10_000, max_buffer=10_000)

    async def test_http_error_status(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(b"", status=500)}
        with pytest.raises(httpx.HTTPStatusError):
            await self.download(routes)


@pytest.mark.asyncio
class TestProbeGuideSize:
    """HEAD size probe."""

    async def test_declared_length(self):
        routes = {("HEAD", GUIDE_URL): lambda request: httpx.Response(200, headers={"Content-Length": "1234"})}
        async with mock_client(routes) as client:
            assert await probe_guide_size(client, GUIDE_URL) == 1234

    async def test_rejected_head_is_tolerated(self):
        async with mock_client({}) as client:
            assert await probe_guide_size(client, GUIDE_URL) is None

    async def test_network_error_is_tolerated(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with mock_client({("HEAD", GUIDE_URL): refuse}) as client:
            assert await probe_guide_size(client, GUIDE_URL) is None


@pytest.mark.asyncio
class TestLoadGuide:
    """End-to-end guide loading; every failure yields None."""

    async def test_success(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE)}
        async with mock_client(routes) as client:
            index = await load_guide(GUIDE_URL, client=client)

        assert index is not None
        assert index.programme_count == 2

    async def test_encoded_url(self):
        routes = {("GET", GZ_URL): lambda request: streamed(gzip_bytes(BBC_GUIDE))}
        async with mock_client(routes) as client:
            index = await load_guide("http%253A%252F%252Fe.example%252Fguide.xml.gz", client=client)

        assert index is not None
        assert index.candidates("bbc1")[1].title == "Weather"

    async def test_invalid_url_makes_no_request(self):
        calls = []
        async with mock_client({}, calls) as client:
            assert await load_guide("not a url", client=client) is None
        assert calls == []

    async def test_oversized_head_skips_download(self, monkeypatch):
        monkeypatch.setattr(settings, "epg_max_declared_bytes", 1000)
        calls = []
        routes = {
            ("HEAD", GUIDE_URL): lambda request: httpx.Response(200, headers={"Content-Length": "2000"}),
            ("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE),
        }
        async with mock_client(routes, calls) as client:
            assert await load_guide(GUIDE_URL, client=client) is None

        assert calls == [("HEAD", GUIDE_URL)]

    async def test_oversized_stream(self, monkeypatch):
        monkeypatch.setattr(settings, "epg_max_buffer_bytes", 100)
        routes = {("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE, chunk_size=32)}
        async with mock_client(routes) as client:
            assert await load_guide(GUIDE_URL, client=client) is None

    async def test_server_error(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(b"", status=503)}
        async with mock_client(routes) as client:
            assert await load_guide(GUIDE_URL, client=client) is None

    async def test_malformed_xml(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(b"<tv><programme")}
        async with mock_client(routes) as client:
            assert await load_guide(GUIDE_URL, client=client) is None

    async def test_corrupt_gzip(self):
        routes = {("GET", GZ_URL): lambda request: streamed(b"\x1f\x8b" + b"garbage" * 10)}
        async with mock_client(routes) as client:
            assert await load_guide(GZ_URL, client=client) is None

    async def test_empty_body(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(b"")}
        async with mock_client(routes) as client:
            assert await load_guide(GUIDE_URL, client=client) is None

    async def test_deadline(self):
        routes = {("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE, chunk_size=10, delay=0.05)}
        async with mock_client(routes) as client:
            started = asyncio.get_running_loop().time()
            assert await load_guide(GUIDE_URL, client=client, deadline_seconds=0.2) is None
            assert asyncio.get_running_loop().time() - started < 2.0


@pytest.mark.asyncio
async def test_build_guide_snapshot():
    routes = {("GET", GUIDE_URL): lambda request: streamed(BBC_GUIDE)}
    async with mock_client(routes) as client:
        snapshot = await build_guide_snapshot(GUIDE_URL, client=client)

    assert snapshot.source_url == GUIDE_URL
    assert snapshot.index.programme_count == 2
