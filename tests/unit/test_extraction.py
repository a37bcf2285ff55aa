"""文本提取服务的单元测试"""

import httpx
import pytest

from correcte.config.providers import ExtractionConfig, ExtractionProvider
from correcte.models.submission import SourceFile
from correcte.services.cache import TwoTierCache
from correcte.services.errors import InvalidInput, MalformedResponse, QuotaExceeded
from correcte.services.extraction import (
    AzureReadExtractor,
    ExtractedText,
    ExtractionService,
    LocalFileLoader,
    PlainTextExtractor,
    create_extractor,
)
from correcte.utils.retry import RetryConfig

AZURE_ENDPOINT = "https://vision.example.com"
OPERATION_URL = f"{AZURE_ENDPOINT}/vision/v3.2/read/analyzeResults/op-1"


async def _no_sleep(_seconds: float) -> None:
    return None


class FakeLoader:
    def __init__(self, content: bytes = b"image-bytes"):
        self.content = content
        self.reads = 0

    async def read(self, source: SourceFile) -> bytes:
        self.reads += 1
        return self.content


class FakeExtractor:
    """可控的提取器"""

    name = "fake_ocr"

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    def supports(self, mime_type: str) -> bool:
        return mime_type.startswith("image/")

    async def extract(self, source: SourceFile, content: bytes) -> ExtractedText:
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _image(name: str = "page1.jpg", checksum: str = "abc") -> SourceFile:
    return SourceFile(uri=f"uploads/{name}", mime_type="image/jpeg", size_bytes=10, checksum=checksum)


def _read_result(lines):
    return {
        "status": "succeeded",
        "analyzeResult": {
            "readResults": [
                {
                    "page": 1,
                    "lines": [
                        {"text": text, "words": [{"text": w, "confidence": c} for w, c in words]}
                        for text, words in lines
                    ],
                }
            ]
        },
    }


def _azure_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def azure_config():
    return ExtractionConfig(
        provider=ExtractionProvider.AZURE_READ,
        azure_endpoint=AZURE_ENDPOINT,
        azure_key="secret-key",
        poll_timeout_seconds=5.0,
    )


class TestPlainTextExtractor:

    @pytest.mark.asyncio
    async def test_decodes_utf8(self):
        source = SourceFile(uri="uploads/copie.txt", mime_type="text/plain")
        result = await PlainTextExtractor().extract(source, "\ufeffLigne un\n\nLigne deux\n".encode("utf-8"))

        assert result.text == "Ligne un\n\nLigne deux"
        assert result.confidence == 1.0
        assert result.line_count == 2

    @pytest.mark.asyncio
    async def test_invalid_encoding_is_input_error(self):
        source = SourceFile(uri="uploads/copie.txt", mime_type="text/plain")
        with pytest.raises(InvalidInput):
            await PlainTextExtractor().extract(source, b"\xff\xfe\xfa")


class TestAzureReadExtractor:

    @pytest.mark.asyncio
    async def test_submit_poll_and_average_word_confidence(self, azure_config):
        polls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                assert request.url.path == "/vision/v3.2/read/analyze"
                assert request.url.params["language"] == "fr"
                assert request.headers["Ocp-Apim-Subscription-Key"] == "secret-key"
                return httpx.Response(202, headers={"Operation-Location": OPERATION_URL})
            polls.append(request.url)
            if len(polls) == 1:
                return httpx.Response(200, json={"status": "running"})
            return httpx.Response(
                200,
                json=_read_result([
                    ("Bonjour monde", [("Bonjour", 0.9), ("monde", 0.7)]),
                    ("Fin", [("Fin", 0.8)]),
                ]),
            )

        extractor = AzureReadExtractor(azure_config, client=_azure_client(handler), sleep=_no_sleep)
        result = await extractor.extract(_image(), b"jpeg")

        assert result.text == "Bonjour monde\nFin"
        assert result.line_count == 2
        assert result.confidence == pytest.approx(0.8)
        assert len(polls) == 2

    @pytest.mark.asyncio
    async def test_missing_operation_location(self, azure_config):
        def handler(request):
            return httpx.Response(202)

        extractor = AzureReadExtractor(azure_config, client=_azure_client(handler), sleep=_no_sleep)
        with pytest.raises(MalformedResponse):
            await extractor.extract(_image(), b"jpeg")

    @pytest.mark.asyncio
    async def test_failed_analysis_is_input_error(self, azure_config):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(202, headers={"Operation-Location": OPERATION_URL})
            return httpx.Response(200, json={"status": "failed"})

        extractor = AzureReadExtractor(azure_config, client=_azure_client(handler), sleep=_no_sleep)
        with pytest.raises(InvalidInput):
            await extractor.extract(_image(), b"jpeg")

    @pytest.mark.asyncio
    async def test_rate_limit_is_classified_through_service(self, azure_config, pipeline_settings):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "3"})

        extractor = AzureReadExtractor(azure_config, client=_azure_client(handler), sleep=_no_sleep)
        service = ExtractionService(
            [extractor],
            loader=FakeLoader(),
            settings=pipeline_settings,
            retry_config=RetryConfig(maximum_attempts=1),
        )
        with pytest.raises(QuotaExceeded) as exc_info:
            await service.extract_file(_image())
        assert exc_info.value.retry_after == 3.0
        assert exc_info.value.provider == "azure_read"

    def test_endpoint_required(self):
        with pytest.raises(ValueError):
            AzureReadExtractor(ExtractionConfig(azure_endpoint=""))


def test_create_extractor_by_provider(azure_config):
    assert isinstance(create_extractor(azure_config), AzureReadExtractor)
    assert isinstance(create_extractor(ExtractionConfig(provider=ExtractionProvider.PLAIN_TEXT)), PlainTextExtractor)


class TestExtractionService:

    @pytest.mark.asyncio
    async def test_second_extraction_hits_cache(self, pipeline_settings, clock):
        extractor = FakeExtractor([ExtractedText("Bonjour", 0.95, 1, "fake_ocr")])
        loader = FakeLoader()
        service = ExtractionService([extractor], cache=TwoTierCache(clock=clock), loader=loader, settings=pipeline_settings)

        first, first_hit = await service.extract_file(_image())
        second, second_hit = await service.extract_file(_image())

        assert (first_hit, second_hit) == (False, True)
        assert second.text == "Bonjour"
        assert extractor.calls == 1
        assert loader.reads == 1

    @pytest.mark.asyncio
    async def test_cache_key_uses_content_hash_without_checksum(self, pipeline_settings, clock):
        extractor = FakeExtractor([ExtractedText("Bonjour", 0.95, 1, "fake_ocr")])
        service = ExtractionService(
            [extractor], cache=TwoTierCache(clock=clock), loader=FakeLoader(b"same"), settings=pipeline_settings
        )

        await service.extract_file(_image("a.jpg", checksum=None))
        _, hit = await service.extract_file(_image("b.jpg", checksum=None))

        assert hit
        assert extractor.calls == 1

    @pytest.mark.asyncio
    async def test_multi_file_confidence_is_line_weighted(self, pipeline_settings):
        extractor = FakeExtractor([
            ExtractedText("Page un\nsuite\nfin", 0.9, 3, "fake_ocr"),
            ExtractedText("Page deux", 0.5, 1, "fake_ocr"),
        ])
        service = ExtractionService([extractor], loader=FakeLoader(), settings=pipeline_settings)
        progress = []

        async def on_progress():
            progress.append(True)

        outcome = await service.extract_submission([_image("p1.jpg", "c1"), _image("p2.jpg", "c2")], on_progress)

        assert outcome.text == "Page un\nsuite\nfin\n\nPage deux"
        assert outcome.confidence == pytest.approx(0.8)
        assert outcome.provider == "fake_ocr"
        assert len(progress) == 2

    @pytest.mark.asyncio
    async def test_unsupported_mime_type(self, pipeline_settings):
        service = ExtractionService([FakeExtractor([])], loader=FakeLoader(), settings=pipeline_settings)
        source = SourceFile(uri="uploads/video.mp4", mime_type="video/mp4")

        with pytest.raises(InvalidInput):
            await service.extract_submission([source])

    @pytest.mark.asyncio
    async def test_empty_text_is_input_error(self, pipeline_settings):
        extractor = FakeExtractor([ExtractedText("", 0.0, 0, "fake_ocr")])
        service = ExtractionService([extractor], loader=FakeLoader(), settings=pipeline_settings)

        with pytest.raises(InvalidInput):
            await service.extract_submission([_image()])

    @pytest.mark.asyncio
    async def test_empty_file_is_input_error(self, pipeline_settings):
        service = ExtractionService([FakeExtractor([])], loader=FakeLoader(b""), settings=pipeline_settings)
        with pytest.raises(InvalidInput):
            await service.extract_file(_image())

    def test_requires_an_extractor(self, pipeline_settings):
        with pytest.raises(ValueError):
            ExtractionService([], settings=pipeline_settings)


class TestLocalFileLoader:

    @pytest.mark.asyncio
    async def test_reads_relative_to_base_dir(self, tmp_path):
        (tmp_path / "copie.txt").write_bytes(b"Bonjour")
        loader = LocalFileLoader(str(tmp_path))

        assert await loader.read(SourceFile(uri="copie.txt", mime_type="text/plain")) == b"Bonjour"

    @pytest.mark.asyncio
    async def test_missing_file_raises(self, tmp_path):
        loader = LocalFileLoader(str(tmp_path))
        with pytest.raises(FileNotFoundError):
            await loader.read(SourceFile(uri="absent.txt", mime_type="text/plain"))
