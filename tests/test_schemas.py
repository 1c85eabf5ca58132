"""Tests for tag validation and normalization."""

import pytest
from pydantic import ValidationError

from conftest import EMBED_TEXT, make_tags
from palette_tagging.schemas.schemas import RefinedTags, TagResponse


def test_valid_tags_pass_through():
    tags = TagResponse.model_validate(make_tags())
    assert tags.temperature == "warm"
    assert tags.mood == ["cheerful", "energetic"]


def test_values_are_lowercased_and_trimmed():
    tags = TagResponse.model_validate(
        make_tags(temperature="  WARM ", mood=["Cheerful", "  Calm  Sea "])
    )
    assert tags.temperature == "warm"
    assert tags.mood == ["cheerful", "calm sea"]


@pytest.mark.parametrize(
    "field,raw,expected",
    [
        ("saturation", "high", "vibrant"),
        ("saturation", "pastel", "muted"),
        ("contrast", "strong", "high"),
        ("contrast", "subtle", "low"),
        ("temperature", "mixed", "cool-warm"),
        ("temperature", "grey", "neutral"),
        ("brightness", "bright", "light"),
        ("brightness", "Very Dark", "dark"),
    ],
)
def test_categorical_synonyms_are_normalized(field, raw, expected):
    tags = TagResponse.model_validate(make_tags(**{field: raw}))
    assert getattr(tags, field) == expected


def test_unknown_categorical_value_is_rejected():
    with pytest.raises(ValidationError):
        TagResponse.model_validate(make_tags(temperature="lukewarm"))


def test_missing_categorical_field_is_rejected():
    payload = make_tags()
    del payload["contrast"]
    with pytest.raises(ValidationError):
        TagResponse.model_validate(payload)


def test_null_arrays_become_empty():
    tags = TagResponse.model_validate(make_tags(seasonal=None, style=None))
    assert tags.seasonal == []
    assert tags.style == []


def test_legacy_color_family_is_accepted():
    payload = make_tags()
    del payload["dominant_colors"]
    payload["color_family"] = ["Teal", "navy"]
    tags = TagResponse.model_validate(payload)
    assert tags.dominant_colors == ["teal", "navy"]


def test_extra_fields_are_ignored():
    tags = TagResponse.model_validate(make_tags(harmony=["complementary"]))
    assert not hasattr(tags, "harmony")


def test_embed_text_word_count_is_enforced():
    assert RefinedTags.model_validate({**make_tags(), "embed_text": EMBED_TEXT}).embed_text

    with pytest.raises(ValidationError):
        RefinedTags.model_validate({**make_tags(), "embed_text": "too short"})


def test_overlong_embed_text_is_trimmed():
    long_text = " ".join(f"Word{i}" for i in range(52))
    refined = RefinedTags.model_validate({**make_tags(), "embed_text": long_text})
    words = refined.embed_text.split()
    assert len(words) == 50
    assert words[0] == "word0"
    assert words[-1] == "word49"
