from __future__ import annotations

import copy

import pytest

from generation.blocks import BlockEditError, coerce_block_value, get_block, parse_path, set_block


def _newsletter() -> dict:
    return {
        "headline": "Como cortar retrabalho no time",
        "subheadline": "Tres decisoes que mudam a semana",
        "sections": [
            {"type": "intro", "text": "O retrabalho nasce de briefing vago."},
            {"type": "insight", "title": "Briefing", "text": "Quem define escopo decide o prazo."},
            {"type": "application", "bullets": ["Revise o briefing", "Defina um dono"]},
            {"type": "cta", "text": "Responda com o seu maior gargalo."},
        ],
        "meta": {"draft": False, "words": 420, "ratio": 0.5},
    }


def test_parse_path_reads_keys_and_indices() -> None:
    assert parse_path("sections[2].bullets") == ["sections", 2, "bullets"]
    assert parse_path("clips[0].caption") == ["clips", 0, "caption"]
    assert parse_path("headline") == ["headline"]


@pytest.mark.parametrize("path", ["", "  ", ".headline", "sections[x]", "sections..text", "__proto__", "a.constructor"])
def test_parse_path_rejects_unsafe_paths(path: str) -> None:
    with pytest.raises(BlockEditError) as excinfo:
        parse_path(path)
    assert excinfo.value.code == "unsafe_path"


def test_get_block_returns_value_or_path_not_found() -> None:
    payload = _newsletter()

    assert get_block(payload, "sections[1].title") == "Briefing"
    with pytest.raises(BlockEditError) as excinfo:
        get_block(payload, "sections[9].text")
    assert excinfo.value.code == "path_not_found"


def test_set_block_is_copy_on_write() -> None:
    payload = _newsletter()
    original = copy.deepcopy(payload)

    updated, changed = set_block(payload, "sections[0].text", "  Novo texto de abertura.  ")

    assert changed is True
    assert updated["sections"][0]["text"] == "Novo texto de abertura."
    assert payload == original


def test_set_block_missing_path_returns_input_unchanged() -> None:
    payload = _newsletter()

    updated, changed = set_block(payload, "sections[7].text", "qualquer")

    assert changed is False
    assert updated is payload


def test_set_block_then_get_block_is_idempotent() -> None:
    payload = _newsletter()

    first, _ = set_block(payload, "sections[2].bullets", "- Revise o briefing\n- Nomeie um dono\n\n")
    second, _ = set_block(first, "sections[2].bullets", get_block(first, "sections[2].bullets"))

    assert get_block(first, "sections[2].bullets") == ["Revise o briefing", "Nomeie um dono"]
    assert second == first


def test_string_list_accepts_json_array_text() -> None:
    updated, _ = set_block(_newsletter(), "sections[2].bullets", '["Um passo", "Outro passo"]')

    assert updated["sections"][2]["bullets"] == ["Um passo", "Outro passo"]


def test_string_list_rejects_empty_and_malformed_values() -> None:
    with pytest.raises(BlockEditError) as excinfo:
        set_block(_newsletter(), "sections[2].bullets", "\n \n")
    assert excinfo.value.code == "invalid_block_value"
    with pytest.raises(BlockEditError):
        set_block(_newsletter(), "sections[2].bullets", "[1, 2")
    with pytest.raises(BlockEditError):
        set_block(_newsletter(), "sections[2].bullets", [1, 2])


def test_number_and_boolean_coercion() -> None:
    assert coerce_block_value(420, "512") == 512
    assert coerce_block_value(0.5, "0,75") == 0.75
    assert coerce_block_value(False, "sim") is True
    assert coerce_block_value(True, "0") is False
    with pytest.raises(BlockEditError):
        coerce_block_value(420, "4.5")
    with pytest.raises(BlockEditError):
        coerce_block_value(0.5, "nan")
    with pytest.raises(BlockEditError):
        coerce_block_value(False, "talvez")


def test_structured_values_must_keep_their_type() -> None:
    section = {"type": "intro", "text": "Outro texto de abertura."}
    updated, _ = set_block(_newsletter(), "sections[0]", '{"type": "intro", "text": "Outro texto de abertura."}')

    assert updated["sections"][0] == section
    with pytest.raises(BlockEditError):
        set_block(_newsletter(), "sections[0]", "[1, 2]")


def test_text_blocks_reject_blank_values() -> None:
    with pytest.raises(BlockEditError) as excinfo:
        set_block(_newsletter(), "headline", "   ")
    assert excinfo.value.code == "invalid_block_value"
