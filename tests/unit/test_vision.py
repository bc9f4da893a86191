"""Tests for the Google Cloud Vision receipt processor."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from trucktrack.ocr.vision import ReceiptProcessingError, VisionReceiptProcessor


def _mock_async_client(mock_cls: MagicMock, get_resp: MagicMock, post_resp: MagicMock) -> AsyncMock:
    client = AsyncMock()
    client.get.return_value = get_resp
    client.post.return_value = post_resp
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    mock_cls.return_value = client
    return client


def _vision_response(*descriptions: str, status_code: int = 200) -> MagicMock:
    resp = MagicMock(status_code=status_code, text="")
    resp.json.return_value = {
        "responses": [{"textAnnotations": [{"description": d} for d in descriptions]}],
    }
    return resp


class TestVisionReceiptProcessor:
    @pytest.mark.asyncio
    async def test_without_api_key_returns_empty_data(self) -> None:
        data = await VisionReceiptProcessor(None).process("https://store/r.jpg")
        assert data.amount is None
        assert data.is_complete is False

    @pytest.mark.asyncio
    async def test_extracts_fields_from_detected_text(self) -> None:
        processor = VisionReceiptProcessor("key")
        with patch("trucktrack.ocr.vision.httpx.AsyncClient") as mock_cls:
            http = _mock_async_client(
                mock_cls,
                MagicMock(status_code=200, content=b"\x89PNG"),
                _vision_response("SHELL\nTOTAL $42.50\n", "SHELL", "TOTAL"),
            )
            data = await processor.process("https://store/r.jpg")

        assert data.amount == Decimal("42.50")
        assert data.category == "Fuel"
        body = http.post.call_args.kwargs["json"]
        assert body["requests"][0]["features"][0]["type"] == "TEXT_DETECTION"
        assert body["requests"][0]["image"]["content"] == "iVBORw=="
        assert http.post.call_args.kwargs["params"] == {"key": "key"}

    @pytest.mark.asyncio
    async def test_no_text_detected_returns_empty_data(self) -> None:
        processor = VisionReceiptProcessor("key")
        with patch("trucktrack.ocr.vision.httpx.AsyncClient") as mock_cls:
            _mock_async_client(mock_cls, MagicMock(status_code=200, content=b"x"), _vision_response())
            data = await processor.process("https://store/r.jpg")
        assert data.is_complete is False

    @pytest.mark.asyncio
    async def test_api_error_raises(self) -> None:
        processor = VisionReceiptProcessor("key")
        with patch("trucktrack.ocr.vision.httpx.AsyncClient") as mock_cls:
            _mock_async_client(
                mock_cls, MagicMock(status_code=200, content=b"x"), _vision_response(status_code=403),
            )
            with pytest.raises(ReceiptProcessingError):
                await processor.process("https://store/r.jpg")

    @pytest.mark.asyncio
    async def test_download_error_raises(self) -> None:
        processor = VisionReceiptProcessor("key")
        with patch("trucktrack.ocr.vision.httpx.AsyncClient") as mock_cls:
            _mock_async_client(mock_cls, MagicMock(status_code=404), _vision_response())
            with pytest.raises(ReceiptProcessingError):
                await processor.process("https://store/r.jpg")

    @pytest.mark.asyncio
    async def test_reads_local_file_urls(self, tmp_path: Path) -> None:
        image = tmp_path / "r.jpg"
        image.write_bytes(b"abc")
        processor = VisionReceiptProcessor("key")
        with patch("trucktrack.ocr.vision.httpx.AsyncClient") as mock_cls:
            http = _mock_async_client(mock_cls, MagicMock(), _vision_response("TOTAL $1.00"))
            await processor.process(image.as_uri())
        http.get.assert_not_called()
        assert http.post.call_args.kwargs["json"]["requests"][0]["image"]["content"] == "YWJj"
