import asyncio

import pytest

from importer.errors import ConfigurationError
from importer.translation.cache import TranslationCache
from importer.translation.translator import Translator, normalize_lang, pick_source_text

from fakes import FakeBackend


def test_pick_source_text_prefers_target_then_priority():
    assert pick_source_text({"es": "Rueda", "ro": "Roată"}, "ro") == ("Roată", "ro", True)
    assert pick_source_text({"es": "Rueda", "en": "Wheel"}, "ro") == ("Wheel", "en", False)
    assert pick_source_text({"pt": "Roda"}, "ro") == ("Roda", "pt", False)
    assert pick_source_text("plain", "ro") == ("plain", None, True)
    assert pick_source_text({}, "ro") == ("", None, True)


def test_pick_source_text_reads_translations_list():
    value = {
        "defaultLanguageCode": "es",
        "translations": [
            {"reference": "es", "value": "Freno"},
            {"reference": "de", "value": "Bremse"},
        ],
    }
    assert pick_source_text(value, "ro") == ("Freno", "es", False)
    assert pick_source_text(value, "de") == ("Bremse", "de", True)


def test_normalize_lang():
    assert normalize_lang("EN") == "en"
    assert normalize_lang("") == "es"
    assert normalize_lang("auto") == "es"


def test_translator_requires_target_language():
    with pytest.raises(ConfigurationError):
        Translator(FakeBackend(), "  ")


def test_translate_memoizes_and_skips_same_language():
    backend = FakeBackend()
    t = Translator(backend, "ro")

    async def run():
        first = await t.translate("Rueda")
        second = await t.translate("Rueda")
        same = await t.translate("Roată", "ro")
        return first, second, same

    first, second, same = asyncio.run(run())
    assert first == second == "[ro]Rueda"
    assert same == "Roată"
    assert len(backend.calls) == 1


def test_translate_failure_returns_original_text():
    t = Translator(FakeBackend(fail=True), "ro")
    assert asyncio.run(t.translate("Rueda")) == "Rueda"
    assert asyncio.run(t.translate_batch(["Rueda", "Freno"])) == ["Rueda", "Freno"]


def test_translate_batch_dedupes_and_keeps_positions():
    backend = FakeBackend()
    t = Translator(backend, "ro")
    out = asyncio.run(t.translate_batch(["Rueda", "", "Freno", "Rueda"]))
    assert out == ["[ro]Rueda", "", "[ro]Freno", "[ro]Rueda"]
    assert backend.calls == [("batch", ["Rueda", "Freno"], "es")]


def test_translate_multilingual_uses_target_verbatim():
    backend = FakeBackend()
    t = Translator(backend, "ro")
    assert asyncio.run(t.translate_multilingual({"ro": "Roată", "es": "Rueda"})) == "Roată"
    assert asyncio.run(t.translate_multilingual({"en": "Wheel"})) == "[ro]Wheel"
    assert backend.calls == [("translate", "Wheel", "en")]


def test_prefetch_batches_per_source_language():
    backend = FakeBackend()
    t = Translator(backend, "ro")
    sent = asyncio.run(t.prefetch([{"es": "Rueda"}, {"en": "Wheel"}, {"es": "Freno"}, {"ro": "Gata"}]))
    assert sent == 3
    assert ("batch", ["Rueda", "Freno"], "es") in backend.calls
    assert ("batch", ["Wheel"], "en") in backend.calls
    # later single lookups hit the memo
    asyncio.run(t.translate("Rueda"))
    assert len(backend.calls) == 2


def test_persistent_cache_survives_new_translator(database):
    cache = TranslationCache(database)
    backend = FakeBackend()
    asyncio.run(Translator(backend, "ro", cache).translate_batch(["Rueda"]))

    again = FakeBackend()
    out = asyncio.run(Translator(again, "ro", cache).translate("Rueda"))
    assert out == "[ro]Rueda"
    assert again.calls == []
    assert asyncio.run(cache.count()) == 1
    assert asyncio.run(cache.clear()) == 1
    assert asyncio.run(cache.count()) == 0


def test_batch_keeps_cached_results_when_backend_fails(database):
    cache = TranslationCache(database)
    asyncio.run(Translator(FakeBackend(), "ro", cache).translate_batch(["Rueda"]))

    down = FakeBackend(fail=True)
    out = asyncio.run(Translator(down, "ro", cache).translate_batch(["Rueda", "Freno", "Rueda"]))
    assert out == ["[ro]Rueda", "Freno", "[ro]Rueda"]
    # only the uncached text reached the backend
    assert down.calls == [("batch", ["Freno"], "es")]
