import asyncio
import json

import httpx
import pytest

from importer.errors import ConfigurationError, TranslationError, UpstreamError
from importer.http_client import HttpClient
from importer.translation.backends import (
    DEEPL_FREE_ENDPOINT,
    DEEPL_PRO_ENDPOINT,
    DeepLTranslateBackend,
    GoogleTranslateBackend,
    OpenRouterTranslateBackend,
    build_translation_backend,
    encode_numbered_list,
    is_slow_model,
    parse_numbered_list,
)


def _http(handler) -> HttpClient:
    return HttpClient(transport=httpx.MockTransport(handler))


# ---- HttpClient ----

def test_http_client_raises_upstream_error_with_message():
    def handler(request):
        return httpx.Response(403, json={"message": "Forbidden key"})

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(_http(handler).get("https://vendor.test/x"))
    assert exc.value.upstream_status == 403
    assert "Forbidden key" in exc.value.message


def test_http_client_rejects_invalid_json():
    def handler(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(_http(handler).get("https://vendor.test/x"))
    assert "Invalid JSON" in exc.value.message


def test_http_client_wraps_transport_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(_http(handler).get("https://vendor.test/x"))
    assert exc.value.upstream_status is None


# ---- Google ----

def test_google_batch_maps_translations_in_order():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["key"] = request.url.params.get("key")
        return httpx.Response(200, json={"data": {"translations": [
            {"translatedText": "Roată"}, {"translatedText": "Frână"},
        ]}})

    backend = GoogleTranslateBackend("g-key", _http(handler))
    out = asyncio.run(backend.translate_batch(["Rueda", "Freno"], "es", "ro"))
    assert out == ["Roată", "Frână"]
    assert seen["key"] == "g-key"
    assert seen["body"]["q"] == ["Rueda", "Freno"]
    assert seen["body"]["source"] == "es"


def test_google_http_failure_becomes_translation_error():
    backend = GoogleTranslateBackend("g-key", _http(lambda r: httpx.Response(500, json={})))
    with pytest.raises(TranslationError):
        asyncio.run(backend.translate("Rueda", "es", "ro"))


def test_google_requires_key():
    with pytest.raises(ConfigurationError):
        GoogleTranslateBackend("")


# ---- DeepL ----

def test_deepl_endpoint_follows_key_tier():
    assert DeepLTranslateBackend("abc:fx").endpoint == DEEPL_FREE_ENDPOINT
    assert DeepLTranslateBackend("abc").endpoint == DEEPL_PRO_ENDPOINT


def test_deepl_sends_upper_case_languages_and_auth_header():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"translations": [{"text": "Roată"}]})

    backend = DeepLTranslateBackend("k:fx", _http(handler))
    assert asyncio.run(backend.translate("Rueda", "es", "ro")) == "Roată"
    assert seen["auth"] == "DeepL-Auth-Key k:fx"
    assert seen["body"]["source_lang"] == "ES"
    assert seen["body"]["target_lang"] == "RO"


def test_deepl_invalid_payload():
    backend = DeepLTranslateBackend("k", _http(lambda r: httpx.Response(200, json={"oops": True})))
    with pytest.raises(TranslationError):
        asyncio.run(backend.translate_batch(["Rueda"], "es", "ro"))


# ---- OpenRouter ----

def test_numbered_list_round_trip_keeps_missing_lines():
    assert encode_numbered_list(["a  b", "c"]) == "1. a b\n2. c"
    assert parse_numbered_list("1) Uno\n3. Tres\nnoise", ["one", "two", "three"]) == ["Uno", "two", "Tres"]


def test_slow_models_are_detected():
    assert is_slow_model("openai/o1-mini")
    assert is_slow_model("deepseek/deepseek-r1")
    assert not is_slow_model("google/gemini-2.0-flash-001")


def test_openrouter_batch_parses_numbered_answer():
    def handler(request):
        body = json.loads(request.content)
        assert body["model"] == "google/gemini-2.0-flash-001"
        return httpx.Response(200, json={"choices": [{"message": {"content": "1. Roată\n2. Frână"}}]})

    backend = OpenRouterTranslateBackend("or-key", "google/gemini-2.0-flash-001", _http(handler))
    assert asyncio.run(backend.translate_batch(["Rueda", "Freno"], "es", "ro")) == ["Roată", "Frână"]


def test_openrouter_refuses_slow_model_without_calling():
    def handler(request):
        raise AssertionError("no request expected")

    backend = OpenRouterTranslateBackend("or-key", "openai/o1", _http(handler))
    assert asyncio.run(backend.translate_batch(["Rueda"], "es", "ro")) == ["Rueda"]
    assert asyncio.run(backend.translate("Rueda", "es", "ro")) == "Rueda"


def test_build_backend_by_driver():
    assert build_translation_backend({"translation_driver": "deepl", "deepl_api_key": "k"}).name == "deepl"
    assert build_translation_backend({"translation_driver": "google", "translate_api_key": "k"}).name == "google"
    with pytest.raises(ConfigurationError):
        build_translation_backend({"translation_driver": "babelfish"})
